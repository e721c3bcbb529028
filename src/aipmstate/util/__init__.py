# src/aipmstate/util/__init__.py: Shared helpers for errors, logging, paths and I/O.
