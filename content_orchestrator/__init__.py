"""Content orchestration core: lifecycle, review gates, scheduled publishing, pipeline run-loop."""

__version__ = "0.1.0"
