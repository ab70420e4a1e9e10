"""
ntlm-proxy Test Suite

Test organization:
- unit/: Unit tests for individual modules; socket-level tests are
  marked ``network`` and only bind 127.0.0.1
- property/: Property-based tests using Hypothesis
"""
