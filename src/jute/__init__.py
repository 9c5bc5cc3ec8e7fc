from .config import ClientConfig as ClientConfig
from .connection import Channel as Channel
from .connection import ConnectionDescriptor as ConnectionDescriptor
from .connection import find_connection_file as find_connection_file
from .errors import AlreadyConnected as AlreadyConnected
from .errors import ChannelClosed as ChannelClosed
from .errors import JuteError as JuteError
from .errors import KernelConnect as KernelConnect
from .errors import KernelDisconnect as KernelDisconnect
from .errors import MalformedFrame as MalformedFrame
from .errors import RequestCancelled as RequestCancelled
from .errors import SignatureMismatch as SignatureMismatch
from .errors import TransportUnavailable as TransportUnavailable
from .events import CellEvent as CellEvent
from .events import KernelEvent as KernelEvent
from .message import Message as Message
from .server import KernelServer as KernelServer
from .session import ConnectionState as ConnectionState
from .session import Session as Session

__version__ = "0.1.0"
