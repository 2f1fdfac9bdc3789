"""Chunked, resumable duplication of episode content trees."""
