"""A small distributed file store over gRPC: master node, data nodes and client."""

__version__ = "0.1.0"