"""
OAuth Flow Tests

Token endpoints are mocked with respx; no provider is contacted.
"""
