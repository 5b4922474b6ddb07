class HarvestError(Exception):
    """Base class for failures that abort a fetch cycle."""


class HarvestConnectionError(HarvestError):
    """The target service could not be reached."""


class VersionParseError(HarvestError):
    """The server version could not be determined."""


class QueryError(HarvestError):
    """A statistics query or command failed."""


class RowScanError(HarvestError):
    """A single result row could not be decoded."""
