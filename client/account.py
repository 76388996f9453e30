import asyncio
import logging

from common.schema import Account, KeyPair
from client.keystore import KeyStore
from client.session import SessionState

log = logging.getLogger(__name__)


class AccountManager:
    '''
    Keeps the local KeyStore and the server's copy of the account keys in step.

    The private key is escrowed on the server so a new device can recover it.
    That means the server can read every message sent to this account.
    '''
    def __init__(self, net, keystore: KeyStore, session: SessionState):
        self.net = net
        self.keystore = keystore
        self.session = session

    async def enroll(self, account: Account) -> KeyPair:
        '''
        First login after verification: create the account keys, escrow them, store locally.
        KeyGenerationError is not caught here; an account must not silently start without keys.
        '''
        self.keystore.bind(account.id)
        key_pair = await asyncio.to_thread(KeyStore.generate_key_pair)
        await self.net.store_keys(key_pair.public_key, key_pair.private_key)
        self.keystore.persist_private_key(key_pair)
        self.session.set_public_key(key_pair.public_key)
        log.info("generated and stored keys for %s", account.id)
        return key_pair

    async def restore_session(self, account: Account) -> KeyPair:
        '''
        Make sure this device holds the account's private key.
        Uses the local copy if there is one, otherwise recovers the escrowed key,
        otherwise enrolls.
        '''
        self.keystore.bind(account.id)
        self.session.start(account)

        local = self.keystore.load_private_key()
        if local is not None:
            if account.public_key and account.public_key != local.public_key:
                log.warning("local key for %s does not match the published one", account.id)
            if not account.public_key:
                # keys exist locally but were never published
                await self.net.store_keys(local.public_key, local.private_key)
            self.session.set_public_key(local.public_key)
            return local

        if account.private_key and account.public_key:
            recovered = KeyPair(public_key=account.public_key, private_key=account.private_key)
            try:
                self.keystore.persist_private_key(recovered)
            except ValueError as e:
                log.error("escrowed key for %s is unusable: %s", account.id, e)
            else:
                log.info("recovered escrowed key for %s", account.id)
                return recovered

        return await self.enroll(account)

    def logout(self) -> None:
        # keys stay on disk so messages can be read again after the next login
        self.session.end()

    def forget_keys(self) -> None:
        self.keystore.clear_private_key()
