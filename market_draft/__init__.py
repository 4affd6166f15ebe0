"""
Prediction-market fantasy draft service.

League members draft prediction-market outcomes in turns; rosters are scored
live from order-book price movement.
"""

__version__ = '1.0.0'
