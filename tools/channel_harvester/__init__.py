"""
Channel Harvester – Collect a public channel's images into a gallery catalog.

Supports:
  • Full crawls of a channel's web feed (headless mobile browser)
  • Incremental crawls that stop at content the catalog already holds
  • Merging into a deduplicated, newest-first JSON catalog
  • Canonical cleanup (one image per message) and broken-link checks
"""
