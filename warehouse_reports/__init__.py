"""
Warehouse popularity reports for the package gallery.

Extracts download statistics from the reporting warehouse and publishes them
as JSON blobs:
  - Aggregate reports (per month, recent popularity, recent popularity detail)
  - One recent-popularity report per package pending export

Each per-package export is confirmed back to the warehouse so the package is
not exported again until new downloads arrive.
"""

__version__ = "0.1.0"
