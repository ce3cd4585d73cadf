class SieveError(Exception):
    """Base class for every error the proxy reports to its callers."""


class BindError(SieveError):
    """The listening address could not be bound."""


class ParseError(SieveError):
    """A client request could not be interpreted."""


class UpstreamError(SieveError):
    """The upstream host was unreachable or timed out."""


class PolicyUpdateError(SieveError):
    """A policy mutation was rejected; the policy is unchanged."""


class InvalidPatternError(PolicyUpdateError):
    pass


class DuplicateEntryError(PolicyUpdateError):
    pass


class ListImportError(SieveError):
    """Exchange rows were malformed; the list is unchanged."""


class PersistenceError(SieveError):
    """State could not be written to or read from disk."""


class CorruptStateError(PersistenceError):
    pass
