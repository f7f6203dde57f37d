from .fuzzing import FuzzingPipeline

__all__ = ["FuzzingPipeline"]
