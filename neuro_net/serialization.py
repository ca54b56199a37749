"""
serialization.py
~~~~~~~~~~~~~~~~

JSON encoding of network state to and from byte sinks.

A sink is either a filesystem path or a binary file object. The encoding
is a UTF-8 JSON object with one field per piece of state; Python's float
repr keeps every weight bit-exact across a round trip.
"""

import json
import os
import logging
from typing import Any, Dict, Union, BinaryIO

import numpy as np

from neuro_net.exceptions import IOFailure

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

Sink = Union[str, os.PathLike, BinaryIO]


class NetworkEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles numpy arrays and scalars."""

    def default(self, obj: Any) -> Any:
        """
        Convert numpy values to their plain Python equivalents.

        Args:
            obj: Object to serialize

        Returns:
            JSON-serializable representation
        """
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        return super().default(obj)


def _is_path(sink: Any) -> bool:
    return isinstance(sink, (str, os.PathLike))


def encode_state(state: Dict[str, Any]) -> bytes:
    """Encode a state dictionary to JSON bytes."""
    document = {'format_version': FORMAT_VERSION}
    document.update(state)
    return json.dumps(document, cls=NetworkEncoder).encode('utf-8')


def decode_state(data: bytes) -> Dict[str, Any]:
    """
    Decode JSON bytes produced by :func:`encode_state`.

    Raises:
        IOFailure: If the bytes are not a supported network document
    """
    try:
        document = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise IOFailure(f"network data is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise IOFailure("network data must be a JSON object")

    version = document.pop('format_version', None)
    if version != FORMAT_VERSION:
        raise IOFailure(f"unsupported network format version: {version!r}")
    return document


def write_state(state: Dict[str, Any], sink: Sink) -> None:
    """
    Write a state dictionary to a path or binary file object.

    Raises:
        IOFailure: If the sink cannot be opened or written
    """
    data = encode_state(state)
    try:
        if _is_path(sink):
            with open(sink, 'wb') as f:
                f.write(data)
            logger.debug(f"Wrote {len(data)} bytes to {os.fspath(sink)}")
        else:
            sink.write(data)
    except OSError as e:
        raise IOFailure(f"cannot write network data: {e}") from e


def read_state(source: Sink) -> Dict[str, Any]:
    """
    Read a state dictionary from a path or binary file object.

    Raises:
        IOFailure: If the source cannot be opened, read or decoded
    """
    try:
        if _is_path(source):
            with open(source, 'rb') as f:
                data = f.read()
        else:
            data = source.read()
    except OSError as e:
        raise IOFailure(f"cannot read network data: {e}") from e

    if isinstance(data, str):
        data = data.encode('utf-8')
    return decode_state(data)
