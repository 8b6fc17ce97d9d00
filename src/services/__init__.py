"""Quote providers, caching and the request orchestration built on them."""
