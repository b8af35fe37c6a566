"""
Invoices module - the invoice aggregate, its store and operator actions.
"""
