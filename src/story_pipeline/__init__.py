"""Story pipeline.

Drives a unit of work (a story) from context assembly through
implementation, testing, review and publication to merge, with
checkpointed resume, bounded retries and human escalation.
"""

__version__ = "0.1.0"
