"""
HTTP API for HowTube
"""

from api.main import create_app

__all__ = ['create_app']
