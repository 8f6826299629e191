"""
Pytest fixtures for the SiteGraph test suite.

Fixtures are organized by concern:
- http_mocking: HTTPX MockTransport routing and response builders
- payloads: sample file bytes and fast-failing configuration builders
"""
