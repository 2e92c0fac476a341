class MusicdashError(Exception):
    pass


class ResourceNotFound(MusicdashError):
    """The requested resource does not exist at the source that was asked."""

    def __init__(self, kind: str, identifier: str, source: str = "spotify"):
        self.kind = kind
        self.identifier = identifier
        self.source = source
        super().__init__(f"{kind} '{identifier}' not found ({source})")


class ResourceNotPreserved(ResourceNotFound):
    """
    Cache miss. The only error a FallbackProvider treats as a reason to go remote,
    anything else the local store raises is passed on as is.
    """

    def __init__(self, kind: str, identifier: str):
        super().__init__(kind, identifier, source="database")


class PreserveError(MusicdashError):
    """A top-level preserve failed and its transaction was rolled back."""

    def __init__(self, resource, cause: BaseException):
        self.resource = resource
        super().__init__(f"Preserving {type(resource).__name__} "
                         f"'{getattr(resource, 'spotify_id', None) or getattr(resource, 'url', '?')}' "
                         f"failed: {cause}")


class SpotifyAuthError(MusicdashError):
    pass
