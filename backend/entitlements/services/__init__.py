"""Entitlement Services"""
