"""graph-foundry: build and query knowledge graphs from chunked documents."""

__version__ = "0.1.0"
