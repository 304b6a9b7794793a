"""Landed-cost quote calculation engine.

Turns a cart of items and an origin/destination country pair into an
itemized quote covering customs duty, destination and origin taxes,
shipping, handling, insurance, payment gateway fees and currency conversion.
"""

__version__ = "0.1.0"
