"""
Credential Fulfillment Engine

Marketplace backend subsystem that accepts vendor credential uploads, validates and
encrypts them, reconciles them against administrator stock requests and keeps an
append-only audit trail of every credential and request transition.
"""

__version__ = "1.0.0"
__author__ = "Credential Fulfillment Team"
