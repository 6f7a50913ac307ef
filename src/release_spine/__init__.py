"""
release-spine - single-pipeline continuous delivery orchestrator.

- release_spine.core: errors, results, logging, settings, secrets
- release_spine.execution: retry policies, cancellation, target locks
- release_spine.pipeline: tagger, publisher, provisioner, remote executor,
  health prober, scheduler
- release_spine.cli: ``release-spine`` command line
"""

__version__ = "0.1.0"
