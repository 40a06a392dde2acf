"""StepSync — privacy-preserving LLM orchestration for a step tracking assistant."""

__version__ = "0.4.0"
