"""Public package API for workercom."""

from loguru import logger

from workercom import transfers  # installs the built-in transfer handlers
from workercom.api import construct
from workercom.api import create_endpoint
from workercom.api import release_proxy
from workercom.channel import Endpoint
from workercom.channel import MessageChannel
from workercom.channel import MessagePort
from workercom.dispatch import Exposure
from workercom.dispatch import expose
from workercom.errors import DataCloneError
from workercom.errors import ProtocolError
from workercom.errors import RemoteError
from workercom.errors import RemoteThrownValue
from workercom.errors import UnsupportedInteractionError
from workercom.errors import WorkercomError
from workercom.proxy import CONSTRUCT
from workercom.proxy import CREATE_ENDPOINT
from workercom.proxy import RELEASE_PROXY
from workercom.proxy import RemoteProxy
from workercom.proxy import wrap
from workercom.registry import TransferHandler
from workercom.registry import install_transfer

logger.disable("workercom")

__all__: list[str] = [
    "construct",
    "create_endpoint",
    "expose",
    "install_transfer",
    "release_proxy",
    "wrap",
    "CONSTRUCT",
    "CREATE_ENDPOINT",
    "RELEASE_PROXY",
    "Endpoint",
    "Exposure",
    "MessageChannel",
    "MessagePort",
    "RemoteProxy",
    "TransferHandler",
    "DataCloneError",
    "ProtocolError",
    "RemoteError",
    "RemoteThrownValue",
    "UnsupportedInteractionError",
    "WorkercomError",
]
