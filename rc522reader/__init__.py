from rc522reader.rc522 import RC522, TransceiveResult, uid_to_hex_string  # noqa: F401
from rc522reader.bus import BusTransport  # noqa: F401
