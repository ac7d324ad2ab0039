"""reviewgraph: code knowledge graph, embedding index and taint tracing for PR review."""

__version__ = "0.3.0"
