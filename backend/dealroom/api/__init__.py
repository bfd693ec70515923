"""
HTTP presentation adapter
"""
