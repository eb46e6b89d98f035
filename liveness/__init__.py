"""
KYC liveness verification: challenge-response checks driven by facial landmarks
"""
__version__ = "1.0.0"
