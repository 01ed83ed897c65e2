"""Dataset adapters: curtailment source, bitcoin calculation store, difficulty, summaries."""
