"""
Utilities Package - AQHI Backend
Settings and database helpers
"""
