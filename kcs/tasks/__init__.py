"""
Stage tasks. Importing this package registers every stage with Celery.
"""

from kcs.tasks import assets, handoff, image_analysis, outbox, print, story  # noqa: F401
