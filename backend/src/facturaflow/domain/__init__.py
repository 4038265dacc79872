"""
Domain package - invoice rules with no I/O.

Contains the submission schema, payload validation, payment-program math,
project matching and the storage naming rules shared by both storage tiers.
"""
