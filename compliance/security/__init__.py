"""Security primitives: hashing, signing, encryption, audit trail, rate limits
and webhook idempotency.
"""
