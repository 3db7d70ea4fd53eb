import os
import string
from typing import FrozenSet, Optional

from models.schemas import ReasonCode, ValidationVerdict, VerdictAccepted, VerdictRejected
from services.content_type import ContentTypeClassifier


class FilenameValidator:
    """
    Filename well-formedness and extension policy for uploads.

    Checks run in a fixed order and stop at the first failure, so the
    reported reason is always the earliest rule the name breaks.
    """

    MAX_LENGTH = 255

    ALLOWED_CHARACTERS: FrozenSet[str] = frozenset(
        string.ascii_letters + string.digits + " -_."
    )

    RESERVED_NAMES: FrozenSet[str] = frozenset(
        ["CON", "PRN", "AUX", "NUL"]
        + [f"COM{i}" for i in range(1, 10)]
        + [f"LPT{i}" for i in range(1, 10)]
    )

    ALLOWED_EXTENSIONS: FrozenSet[str] = frozenset(
        [".jpg", ".jpeg", ".png", ".gif", ".svg", ".txt", ".md", ".markdown", ".csv"]
    )

    def __init__(self, classifier: Optional[ContentTypeClassifier] = None) -> None:
        self._classifier = classifier or ContentTypeClassifier()

    def validate(
        self, filename: Optional[str], content_type: Optional[str] = None
    ) -> ValidationVerdict:
        """
        Validate ``filename`` against the naming rules and the extension allow-list.

        Args:
            filename: Declared filename
            content_type: Classified content type, when already known; only
                sets the type carried by the verdict, the extension's type
                is used otherwise

        Returns:
            VerdictAccepted carrying the content type, or VerdictRejected
        """
        filename = filename or ""

        if not 1 <= len(filename) <= self.MAX_LENGTH:
            return self._reject(
                ReasonCode.INVALID_FILENAME,
                f"Filename must be between 1 and {self.MAX_LENGTH} characters",
            )

        if any(char not in self.ALLOWED_CHARACTERS for char in filename):
            return self._reject(
                ReasonCode.INVALID_FILENAME, "Filename contains invalid characters"
            )

        base_name, extension = os.path.splitext(filename)

        if base_name.upper() in self.RESERVED_NAMES:
            return self._reject(
                ReasonCode.INVALID_FILENAME,
                f"Filename uses a reserved name: {base_name}",
            )

        if filename.startswith((".", " ")):
            return self._reject(
                ReasonCode.INVALID_FILENAME,
                "Filename cannot start with a dot or space",
            )

        if filename.endswith(" ") or base_name.endswith(" "):
            return self._reject(
                ReasonCode.INVALID_FILENAME, "Filename cannot end with a space"
            )

        if not extension or extension == ".":
            return self._reject(
                ReasonCode.INVALID_FILENAME, "Filename must include a file extension"
            )

        extension_verdict = self.check_extension(filename)
        if isinstance(extension_verdict, VerdictRejected):
            return extension_verdict

        return VerdictAccepted(
            normalized_content_type=content_type
            or self._classifier.EXTENSION_TO_MIME.get(extension.lower())
        )

    def check_extension(self, filename: Optional[str]) -> ValidationVerdict:
        """Extension admissibility alone; used for generically typed content."""
        _, extension = os.path.splitext(filename or "")
        extension = extension.lower()

        if extension not in self.ALLOWED_EXTENSIONS:
            allowed = ", ".join(sorted(self.ALLOWED_EXTENSIONS))
            return self._reject(
                ReasonCode.UNSUPPORTED_EXTENSION,
                f"File extension {extension or '(none)'} is not allowed. Allowed extensions: {allowed}",
            )

        return VerdictAccepted(
            normalized_content_type=self._classifier.EXTENSION_TO_MIME.get(extension)
        )

    def _reject(self, reason_code: ReasonCode, message: str) -> VerdictRejected:
        return VerdictRejected(reason_code=reason_code, message=message)
