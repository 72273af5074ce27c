"""
Source ingestion: adapter protocol, bounded-concurrency scheduler and the
generic JSONL adapter.
"""
