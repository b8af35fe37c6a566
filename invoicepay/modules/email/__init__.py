"""
Módulo de email para InvoicePay.
"""

from .service import email_service, EmailService

__all__ = ['email_service', 'EmailService']
