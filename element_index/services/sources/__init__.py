"""
Readers for the three element sources.

This package is responsible for:
* Listing elements on local disk (always current, never cached).
* Scanning the personal portfolio repository in rate-limit aware batches.
* Fetching the pre-built collection index document, with a repository scan
  and a saved copy as fallbacks.
"""
