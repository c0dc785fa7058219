"""
LoC Tracker Service.

This service is responsible for:
- Watching local git repositories for changes
- Attributing committed and pending line changes to one author
- Keeping durable, exactly-once running totals per repository
- Reporting the current totals on demand
"""

__version__ = "1.0.0"
__description__ = "Incremental lines-of-code tracking for local git repositories"
