"""Raft leader election and log replication over gRPC with a file-backed log."""

__version__ = "0.1.0"

__all__ = ["log_vec", "messages", "node_service", "raft", "raft_rpc", "timer"]