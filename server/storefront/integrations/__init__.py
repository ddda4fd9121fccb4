"""
Integration modules for the storefront

Contains adapters and clients for external systems:
- Payment gateways (PayPlus, Pelecard, PayPal, hosted fields)
"""
