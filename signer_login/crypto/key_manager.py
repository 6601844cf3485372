import nacl.utils
from nacl.signing import SigningKey

from .memory_wiper import MemoryWiper

SECRET_BYTES = 8  # 16 hex chars in the connect URI


class KeyManager:
    def __init__(self):
        self._seed = None
        self._signing_key = None

    def generate_ephemeral_keys(self):
        """Generates a fresh client keypair for one connection attempt."""
        self.wipe_keys()
        self._seed = bytearray(nacl.utils.random(32))
        self._signing_key = SigningKey(bytes(self._seed))

    @property
    def has_keys(self) -> bool:
        return self._signing_key is not None

    def get_public_key_hex(self) -> str:
        if not self._signing_key:
            raise ValueError("Keys not generated")
        return self._signing_key.verify_key.encode().hex()

    @staticmethod
    def new_secret() -> str:
        return nacl.utils.random(SECRET_BYTES).hex()

    def wipe_keys(self):
        # SigningKey objects are immutable wrappers; the seed buffer is what we can scrub.
        if self._seed is not None:
            MemoryWiper.overwrite(self._seed)
        self._seed = None
        self._signing_key = None
        MemoryWiper.force_gc()
