"""
Utility functions for the positioning algorithms.
"""

from .numerical import centroid, numerical_jacobian

__all__ = [
    'centroid',
    'numerical_jacobian',
]
