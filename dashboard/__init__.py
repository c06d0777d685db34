"""
Purchase order panel JSON API and its services.
"""
