# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_coderunner

"""
coreason-coderunner
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .catalog import ImageCatalog
from .config import CodeRunnerConfig
from .coordinator import ExecutionCoordinator
from .exceptions import (
    AdmissionError,
    CodeRunnerError,
    InfrastructureError,
    InvalidSubmission,
    PoolExhausted,
    SandboxCreationFailed,
    SandboxStateError,
    UnsupportedLanguage,
)
from .models import ExecutionResult, ExecutionStatus, ImageSpec, ResourceLimits, Submission
from .pool import HandleState, SandboxHandle, SandboxPool
from .reaper import Reaper
from .runtime import ContainerRuntime
from .runtimes.docker import DockerRuntime
from .service import CodeRunner, CodeRunnerAsync, parse_submission

__all__ = [
    "AdmissionError",
    "CodeRunner",
    "CodeRunnerAsync",
    "CodeRunnerConfig",
    "CodeRunnerError",
    "ContainerRuntime",
    "DockerRuntime",
    "ExecutionCoordinator",
    "ExecutionResult",
    "ExecutionStatus",
    "HandleState",
    "ImageCatalog",
    "ImageSpec",
    "InfrastructureError",
    "InvalidSubmission",
    "PoolExhausted",
    "Reaper",
    "ResourceLimits",
    "SandboxCreationFailed",
    "SandboxHandle",
    "SandboxPool",
    "SandboxStateError",
    "Submission",
    "UnsupportedLanguage",
    "parse_submission",
]
