import hashlib

from loguru import logger


class SubmissionAuditor:
    """Audit trail for accepted submissions.

    Logs a fingerprint of every submission through loguru. The source text
    itself is never logged.
    """

    def __init__(self, enabled: bool = True):
        """Initializes the SubmissionAuditor.

        Args:
            enabled: Whether to emit audit records.
        """
        self.enabled = enabled
        self._logger = logger.bind(audit=True)

    def log_submission(self, submission_id: str, language_id: str, source: bytes) -> str:
        """Log a submission about to be executed.

        Args:
            submission_id: Identifier used to correlate the later outcome.
            language_id: Language of the submission.
            source: Raw source bytes.

        Returns:
            str: The SHA-256 hash of the source.
        """
        source_hash = hashlib.sha256(source).hexdigest()
        if self.enabled:
            self._logger.info(
                f"AUDIT: Submission {submission_id} ({language_id}). Hash: {source_hash}, Length: {len(source)}"
            )
        return source_hash

    def log_outcome(self, submission_id: str, status: str, elapsed_ms: int) -> None:
        if self.enabled:
            self._logger.info(f"AUDIT: Submission {submission_id} finished: {status} in {elapsed_ms}ms")
