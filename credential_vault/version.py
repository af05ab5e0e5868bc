"""Credential Vault Meta information.
   Credential Vault stores client service credentials encrypted at rest,
   gated by role-based access control and recorded in an audit trail.
"""
__title__ = 'credential_vault'
__description__ = (
   'Credential Vault stores client service credentials encrypted at rest, '
   'with role-based access control and an append-only audit trail.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
