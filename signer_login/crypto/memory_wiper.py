import gc


class MemoryWiper:
    @staticmethod
    def overwrite(buffer: bytearray):
        """
        Zeroes a mutable buffer in place.
        Immutable bytes/str copies cannot be scrubbed; callers keep secrets in bytearrays.
        """
        for i in range(len(buffer)):
            buffer[i] = 0

    @staticmethod
    def force_gc():
        gc.collect()
