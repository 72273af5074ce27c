"""
Core modules for llm-usage-metrics.

This package contains the usage event model, filtering, cost estimation,
aggregation and the end-to-end report pipeline.
"""
