"""
Payments module - signature verification, gateway clients and the
reconciliation engine that owns invoice payment status.
"""
