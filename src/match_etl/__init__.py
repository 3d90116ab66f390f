"""Sharded crawl-state pipeline for soccer match summaries."""
