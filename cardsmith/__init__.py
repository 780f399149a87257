"""
Cardsmith - Character Card Converter

Imports, normalizes and re-exports character cards across CCv2/CCv3 JSON,
PNG, CHARX and Voxta packages without losing platform extension data.
"""

__version__ = "0.1.0"
