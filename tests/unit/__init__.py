"""
Unit Tests Package for the EV Charging Booking Platform

Domain rules, configuration and infrastructure adapters tested in
isolation (in-memory SQLite, mocked Redis client).
"""
