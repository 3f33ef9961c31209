"""Importer source adapters."""
