"""
Managed messaging session clients.

- base: SessionClient ABC and the SessionEvent model
- browser: Playwright-driven client with a persistent profile
"""
