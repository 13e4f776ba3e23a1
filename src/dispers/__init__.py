"""
dispers: privacy-preserving multi-party query pipeline.

A Conductor splits a query across stateless, mutually untrusted roles:
1. Concept Indexer: concepts -> hashes
2. Target Finder: target profile + address lists -> targets
3. Target: one stack query per target, rows reported back
4. Data Aggregator: rows -> results, layer by layer

No role sees the whole query and the Conductor never needs the plaintext
of an encrypted query.
"""

__version__ = "0.1.0"
