"""Credential-holding API gateway for the EA Grant Auditor client."""
