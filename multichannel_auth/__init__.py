"""
Multi-channel storefront authentication service.

SMS one-time passcodes, email/password and OAuth logins that all end in a
Multipass hand-off URL for the storefront.
"""
__version__ = "1.0.0"
