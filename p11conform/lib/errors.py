class CaseFailure(Exception):
    failure_kind = "operation"

    def __init__(self, step: str, message: str = "") -> None:
        self.step = step
        self.message = message
        super().__init__(f"{step}: {message}" if message else step)


class GenerationFailure(CaseFailure):
    failure_kind = "generation"


class OperationFailure(CaseFailure):
    failure_kind = "operation"


class ComparatorMismatch(CaseFailure):
    failure_kind = "mismatch"


class NegativePathViolation(CaseFailure):
    # Subject or reference accepted a corrupted input.
    failure_kind = "negative_path"


class EnvironmentFailure(Exception):
    failure_kind = "environment"
