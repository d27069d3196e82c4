"""Government signal aggregation and enrichment pipeline."""
