"""
GlideWay scanner - concurrent port scanning with service fingerprinting
"""

__version__ = "1.0.0"
