"""
Outcome score sync for Canvas LMS.
"""

__version__ = "1.0.0"
