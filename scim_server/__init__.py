"""
SCIM Server

SCIM 2.0 provisioning endpoint for Users, Groups and group memberships.
"""

__version__ = "1.0.0"
