"""
HRFlow - workflow automation engine for employee onboarding and offboarding.
"""

__version__ = "0.1.0"
