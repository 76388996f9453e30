from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
import socket
from threading import Lock

from common.crypto import encrypt_body
from common.messages import Frame
from common.protocol import send_json


@dataclass
class Client:   # one live connection
    username: str
    sock: socket.socket
    aes_key: Optional[bytes] = None     # session key, set after the key exchange
    rooms: Set[str] = field(default_factory=set)   # group ids whose broadcasts this connection receives
    send_lock: Lock = field(default_factory=Lock)  # other handler threads push events to this socket

    def send(self, frame: Frame) -> None:
        with self.send_lock:
            send_json(self.sock, frame.to_dict())

    def send_encrypted(self, type_: str, body: dict) -> None:
        ''' Encrypt body with the session key and send it as a frame of the given type '''
        self.send(Frame(type_, to=self.username, payload=encrypt_body(self.aes_key, body)))


class ServerState:
    # connected clients and their room subscriptions
    def __init__(self):
        self.lock = Lock()
        self.clients: Dict[str, Client] = {}

    def add_client(self, c: Client) -> bool:
        ''' Register a connection; False if the username already has one '''
        with self.lock:
            if c.username in self.clients:
                return False
            self.clients[c.username] = c
            return True

    def remove(self, username: str):
        with self.lock:
            self.clients.pop(username, None)

    def get(self, username: str) -> Optional[Client]:
        with self.lock:
            return self.clients.get(username)

    def users(self) -> List[str]:
        ''' Usernames with a completed key exchange '''
        with self.lock:
            return [u for u, c in self.clients.items() if c.aes_key is not None]

    def all_clients(self) -> List[Client]:
        with self.lock:
            return [c for c in self.clients.values() if c.aes_key is not None]

    def join_room(self, username: str, group_id: str) -> None:
        with self.lock:
            c = self.clients.get(username)
            if c is not None:
                c.rooms.add(group_id)

    def leave_room(self, username: str, group_id: str) -> None:
        with self.lock:
            c = self.clients.get(username)
            if c is not None:
                c.rooms.discard(group_id)

    def in_room(self, group_id: str) -> List[Client]:
        with self.lock:
            return [c for c in self.clients.values() if group_id in c.rooms and c.aes_key is not None]
