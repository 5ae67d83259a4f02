"""Aggregations over stored DMARC reports: stats, timelines, policy advice, CSV."""
