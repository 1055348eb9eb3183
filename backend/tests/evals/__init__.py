"""Retrieval quality evaluations.

Scenario tests run the full pipeline over a small fixed corpus with a
deterministic keyword embedder, then grade the result with code graders:

- graders.py: deterministic graders (required content, citation validity,
  source diversity, category precision)
- test_rag.py: scenario evaluations marked ``rag``
"""
