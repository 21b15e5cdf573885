"""Client-side incremental sync for LiveJournal-style journals."""

__version__ = "0.3.0"

from .auth import Credential, derive_auth_response
from .comments import (
    CommentExportPage, CommentPartial, CommentState, StreamDecoder, TreeDecoder,
    get_decoder, merge_comment,
)
from .entry import Entry, edit_event, get_event, merge_entry, post_event
from .errors import (
    AccidentalDeleteError, ConflictError, DecodeError, LJError, ProtocolError,
    SyncInconsistencyError, TransportError, UnknownFieldError, UserError,
)
from .protocol import ProtocolClient
from .sync import CommentSyncCursor, EntrySyncCursor
