"""cdflow - continuous-delivery pipeline orchestration engine.

Runs declarative delivery pipelines (matrix builds, quality gates, manual
promotion, deployments with rollback) against pluggable execution backends.
"""

__version__ = "0.1.0"
