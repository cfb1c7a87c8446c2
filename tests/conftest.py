from fixtures.rc522 import clock, reader, transport, xfer  # noqa: F401
