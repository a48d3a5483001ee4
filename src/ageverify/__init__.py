"""
AgeVerify - On-chain Age Attestation Core

Runs a randomized head-gesture liveness session against a face sensor,
decides whether the subject is a live adult, binds the biometric embedding to
the wallet as a salted one-way fingerprint, and writes a co-signed
verification record to the age registry program.

This package contains the client-side attestation core: challenge sequencing,
gesture recognition, evidence aggregation, the decision engine, the record
codec, transaction construction and submission, and RPC endpoint management.
"""

__version__ = "1.0.0"
__author__ = "AgeVerify Team"
__email__ = "dev@ageverify.live"
