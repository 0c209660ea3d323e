"""Feed ingestion: SSE collection, normalisation and buffering."""
