"""
Pure lifecycle state machines
"""
