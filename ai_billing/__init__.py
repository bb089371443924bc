"""
ai_billing - Usage-based AI billing and spending-limit enforcement.
"""

__version__ = "1.0.0"
