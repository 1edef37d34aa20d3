"""Retrieval-augmented chat over ingested videos.

Session continuity, token-budgeted context building, streamed completions
with cost metering, and the request flow that ties them together.
"""
