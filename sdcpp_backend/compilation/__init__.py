"""Request compilation into engine job descriptors."""
from .job_descriptor import JobDescriptor, JobDescriptorBuilder, JobParam
from .parameter_compiler import ParameterCompiler, architecture_defaults

__all__ = [
    "JobDescriptor",
    "JobDescriptorBuilder",
    "JobParam",
    "ParameterCompiler",
    "architecture_defaults",
]
