"""
Core infrastructure: configuration, database, logging, metrics, errors
"""
