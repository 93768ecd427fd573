"""Processor-facing building blocks: catalog, pricing, currency rules, errors."""
