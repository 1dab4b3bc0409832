# Error taxonomy for the pollution index engine
from typing import Iterable, List


class PollutionEngineError(Exception):
    """Base class for every error raised by the engine"""


class ConfigurationError(PollutionEngineError):
    """Reference data or threshold tables could not be loaded"""


class SchemaError(PollutionEngineError):
    """Dataset-fatal ingestion error: required columns are missing"""

    def __init__(self, missing_columns: Iterable[str], message: str = None):
        self.missing_columns: List[str] = list(missing_columns)
        if message is None:
            message = f"Missing required column(s): {', '.join(self.missing_columns)}"
        super().__init__(message)


class UnsupportedMetalError(SchemaError):
    """A required concentration column names a metal outside the supported set"""

    def __init__(self, metals: Iterable[str]):
        self.metals: List[str] = list(metals)
        super().__init__(
            [],
            message=f"Unsupported metal(s) declared as required: {', '.join(self.metals)}",
        )


class ParseError(PollutionEngineError):
    """Formula text was rejected at compile time"""

    def __init__(self, position: int, reason: str, token: str = None):
        self.position = position
        self.reason = reason
        self.token = token
        detail = f" '{token}'" if token else ''
        super().__init__(f"{reason}{detail} at position {position}")


class EvalError(PollutionEngineError):
    """A compiled formula could not be evaluated for one sample"""


class UnknownIndexError(PollutionEngineError, KeyError):
    """No index is registered under the given id"""

    def __init__(self, index_id: str):
        self.index_id = index_id
        super().__init__(f"Unknown index id: {index_id}")

    def __str__(self):
        return self.args[0]
