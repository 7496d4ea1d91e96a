class ForwardMetadataError(ValueError):
    """Raised when the x-url or x-headers fields of a forward request are unusable."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
