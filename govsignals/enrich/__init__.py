"""Enrichment: LLM rewrite, image lookup and the batch worker."""
