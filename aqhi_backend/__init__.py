"""
AQHI Backend
Health index computation engine: breakpoint conversion, 3-hour averaging,
grid-supplemented source fusion and cached multi-variant AQHI results
"""

__version__ = '1.0.0'
