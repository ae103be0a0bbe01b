"""
CaseFlow Engine - Services

Business logic and persistence adapters. Nothing in here knows about HTTP.
"""
