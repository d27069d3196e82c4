"""Pure in-memory processing: identity and grouping, content merge, scoring."""
