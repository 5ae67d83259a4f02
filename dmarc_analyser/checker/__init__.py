"""DNS lookups and record analysis for DMARC, SPF and DKIM."""
