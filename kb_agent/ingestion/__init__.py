"""Offline ingestion jobs that populate the article store.

See import_articles.py for the JSONL export importer.
"""
