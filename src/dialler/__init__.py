"""
Call centre dialler: lead prioritisation, queue scheduling and call lifecycle.
"""

__version__ = "0.1.0"
