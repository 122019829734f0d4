"""
API Key Manager.

Central distribution, rotation and usage accounting of provider API keys.
"""

__version__ = "0.1.0"
