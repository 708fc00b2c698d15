"""
Error taxonomy shared by the extraction pipeline, the patch engine and the
Micropub endpoint.  Every error carries the HTTP status and the Micropub
``error`` code it is reported with.
"""


class MicropubError(Exception):
    status = 400
    error = "invalid_request"


# ── caller input ────────────────────────────────────────────────────────
class InputError(MicropubError):
    """No HTML (or other content) was supplied."""


class NoItemsError(MicropubError):
    pass


class AmbiguousItemError(MicropubError):
    """The page holds more than one top-level microformat."""


class EmptyItemError(MicropubError):
    pass


class MalformedRequestError(MicropubError):
    """An update directive (or a property value) has the wrong shape."""


# ── lookups ─────────────────────────────────────────────────────────────
class UnknownPostTypeError(MicropubError):
    pass


class UnsupportedActionError(MicropubError):
    pass


# ── publisher ───────────────────────────────────────────────────────────
class NotFoundError(MicropubError):
    status = 404
    error = "not_found"


class PublishError(MicropubError):
    status = 502
    error = "publish_error"
