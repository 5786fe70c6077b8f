"""
Exercise vault core package.

This package focuses on the ingestion subsystem. It exposes dataclasses for
courses, weeks and exercises, an asset store for page and exercise images, a
rasterizer with a renderer fallback chain, an AI-backed exercise extractor,
a SQL-backed hierarchy store, and a pipeline that drives a document through
rasterization, extraction and persistence.
"""
