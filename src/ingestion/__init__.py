"""Video ingestion pipeline.

This package turns a video reference (uploaded file, YouTube, Loom or Mux)
into a searchable, timestamp-addressable knowledge base: source
normalization, tiered transcript extraction, chunking, embedding, and the
status state machine that sequences them.
"""
