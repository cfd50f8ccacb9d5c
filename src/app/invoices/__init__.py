"""Proforma invoicing -- wFirma proforma generation for Pipedrive deals.

Provides the proforma/payment persistence models, the proforma XML builder,
bank account selection, and InvoiceProcessingService.
"""
