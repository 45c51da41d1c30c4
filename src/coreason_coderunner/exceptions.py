# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_coderunner

"""Error taxonomy for the code runner.

Admission errors are raised before any container is created and are safe to
retry. Infrastructure errors mean the container runtime misbehaved. Submission
outcomes (compile failures, timeouts, kills) are never raised; they are
reported as an ``ExecutionResult``.
"""


class CodeRunnerError(Exception):
    """Base class for every error raised by coreason-coderunner."""


class AdmissionError(CodeRunnerError):
    """The submission was rejected before any sandbox resource was consumed."""


class UnsupportedLanguage(AdmissionError):
    def __init__(self, language_id: str):
        self.language_id = language_id
        super().__init__(f"Unsupported language: {language_id}")


class PoolExhausted(AdmissionError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"No sandbox slot became free within {timeout:.2f}s")


class InvalidSubmission(AdmissionError):
    """The submission payload is malformed or asks for more than the host allows."""


class InfrastructureError(CodeRunnerError):
    """The container runtime failed. May be transient."""


class SandboxCreationFailed(InfrastructureError):
    def __init__(self, image: str, reason: str):
        self.image = image
        self.reason = reason
        super().__init__(f"Failed to create sandbox from image {image}: {reason}")


class SandboxStateError(CodeRunnerError):
    """A sandbox handle was driven through an illegal state transition."""
