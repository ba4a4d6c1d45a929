"""
Courier Dispatch Core

Order lifecycle, courier availability/matching and bidirectional reputation
for a delivery platform connecting companies with couriers.
"""

__version__ = "0.1.0"
