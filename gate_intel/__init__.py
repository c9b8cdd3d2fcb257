"""
Gate Intelligence service - gate derivation and autonomous gate management
"""
__version__ = "1.0.0"
