"""
Relay Manager Test Suite

Structure:
- unit/: Stores, PKCE, provider table, configuration, webhook relay
- oauth/: OAuth flow driver against mocked token endpoints
- integration/: HTTP API and real stdio MCP processes
- fixtures/: Helper programs launched by the integration tests
"""
