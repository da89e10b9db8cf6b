from storyforge.pipeline.orchestrator import PipelineContext, PipelineResult, run_pipeline

__all__ = ["PipelineContext", "PipelineResult", "run_pipeline"]
