"""Acumatica ERP REST client, field extraction and schema discovery."""
