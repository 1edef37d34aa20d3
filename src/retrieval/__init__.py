"""Vector storage and ranked retrieval over embedded transcript chunks."""
