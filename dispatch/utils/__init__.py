"""
Utilities package for the dispatch core (settings, logging, database pool).
"""
