"""Entitlement API Routes"""
