"""sandcastle - container sandbox lifecycle engine.

Runs untrusted commands inside a container instead of on the host:
- Configuration is resolved with secure defaults (non-root, no network, capped resources)
- The runtime invocation is built as an argument vector, secrets redacted for logs
- Every started container is removed exactly once, even on SIGINT/SIGTERM
"""

__version__ = "0.1.0"
