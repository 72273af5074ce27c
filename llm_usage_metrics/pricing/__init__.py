"""
Pricing resolution: rate-table loading, caching and model alias resolution.
"""
