"""Exceptions raised by the trainer core."""


class TrainerError(Exception):
    """Base class for trainer errors."""


class UnknownOpeningError(TrainerError):
    def __init__(self, opening_id: str):
        super().__init__(f"Opening '{opening_id}' not found")
        self.opening_id = opening_id


class UnknownLineError(TrainerError):
    def __init__(self, line_id: str):
        super().__init__(f"Line '{line_id}' not found")
        self.line_id = line_id


class MissingConfigurationError(TrainerError):
    """A line cannot be drilled because required data is absent."""

    def __init__(self, line_id: str, field_name: str):
        super().__init__(f"Line '{line_id}' is missing {field_name}")
        self.line_id = line_id
        self.field_name = field_name


class NoPlanError(TrainerError):
    """No leaf is reachable from the chosen line or node."""

    def __init__(self, line_id: str, node_id: str | None = None):
        target = f"{line_id}:{node_id}" if node_id else line_id
        super().__init__(f"No playable path from '{target}'")
        self.line_id = line_id
        self.node_id = node_id
