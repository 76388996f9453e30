import asyncio
import json
import socket

ENC = "utf-8"
DELIM = b"\n"    # one JSON document per line
MAX_FRAME = 16 * 1024 * 1024   # history responses can be large

# bytes read past the last newline, per socket fd, so recv_json returns exactly one frame per call
_pending: dict[int, bytearray] = {}


def encode_frame(obj: dict) -> bytes:
    ''' Serialize one frame as a single newline-terminated JSON line '''
    return (json.dumps(obj, ensure_ascii=False) + "\n").encode(ENC)


def send_json(sock: socket.socket, obj: dict) -> None:
    '''
    Write one frame to a blocking socket.
    Inputs:
        - sock: connected socket
        - obj: JSON-serializable frame
    '''
    sock.sendall(encode_frame(obj))


def recv_json(sock: socket.socket) -> dict:
    '''
    Read the next frame from a blocking socket.
    Input: connected socket
    Output: the decoded frame
    Raises ConnectionError when the peer closes or a frame exceeds MAX_FRAME,
    ValueError when a line is not valid JSON.
    '''
    buf = _pending.setdefault(sock.fileno(), bytearray())
    while True:
        end = buf.find(DELIM)
        if end != -1:
            line = bytes(buf[:end])
            del buf[:end + 1]
            return json.loads(line.decode(ENC))
        if len(buf) > MAX_FRAME:
            raise ConnectionError("frame too large")
        chunk = sock.recv(65536)
        if not chunk:
            raise ConnectionError("socket closed")
        buf.extend(chunk)


def drop_buffer(sock: socket.socket) -> None:
    ''' Forget residual data for a socket that is about to be closed '''
    try:
        _pending.pop(sock.fileno(), None)
    except OSError:
        pass


async def write_json(writer: asyncio.StreamWriter, obj: dict) -> None:
    ''' Async counterpart of send_json for asyncio streams '''
    writer.write(encode_frame(obj))
    await writer.drain()


async def read_json(reader: asyncio.StreamReader) -> dict:
    ''' Async counterpart of recv_json; the reader must be opened with limit=MAX_FRAME '''
    line = await reader.readline()
    if not line:
        raise ConnectionError("socket closed")
    return json.loads(line.decode(ENC))
