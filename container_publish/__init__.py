"""Build a container image once and publish it under tags derived from a version label."""

from .config import load_config
from .pipeline import PipelineContext, PublishPipeline, Stage
from .versioning import classify

__all__ = ["PublishPipeline", "PipelineContext", "Stage", "classify", "load_config"]
