"""Surplus medication exchange application.

Listings, request matching, exchange coordination and per-exchange
messaging between participating hospitals.
"""
