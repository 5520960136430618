"""
crowdtest - session orchestration core for capacity-limited crowd testing.

Quick start:
    from crowdtest.application.factories import OrchestratorFactory
    from crowdtest.domain.models import Actor

    core = OrchestratorFactory.create_for_testing()
    result = core.admission.try_admit(Actor.tester("t-1"), test_id)
"""

__version__ = "0.1.0"
