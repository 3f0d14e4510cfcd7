"""
Configuration-driven job listing crawler.
"""
__version__ = "0.1.0"
