from unittest.mock import Mock, call

import pytest

from rc522reader.rc522 import RC522, BIT_MASK_MSB, read_address, write_address
from rc522reader.bus import BusTransport


class Transfers:
    """ Maintains the expected list of calls to the transport and the bytes transfer_byte should return """
    def __init__(self, transport):
        self.transport = transport
        self.calls = []
        self.side_effect = []

    def write(self, register, value):
        self.calls += [call.select_chip(), call.transfer_byte(write_address(register)), call.transfer_byte(value), call.deselect_chip()]
        self.side_effect += [0, 0]

    def read(self, register, output):
        self.calls += [call.select_chip(), call.transfer_byte(read_address(register)), call.transfer_byte(0), call.deselect_chip()]
        self.side_effect += [0, output]

    def add(self, other):
        """ Adds a call which isn't part of a register access (e.g. set_clock_rate). """
        self.calls.append(other)

    def assert_calls(self):
        assert self.transport.mock_calls == self.calls

    def set_side_effect(self):
        """ This method must be called last and will setup side_effect for the transfer_byte calls."""
        self.transport.transfer_byte.side_effect = self.side_effect


class TransfersDebug:
    """ Prints the register level meaning of the expected and actual calls for debugging tests."""
    def __init__(self, xfer):
        self.xfer = xfer

    def print_expected_vs_actual(self):
        expected = self._convert_to_meaning(self.xfer.calls)
        actual = self._convert_to_meaning(self.xfer.transport.mock_calls)
        print(f'{"Expected":<50}{"Actual":<50}')
        print(f'Call Count: {len(expected):<38}Call Count: {len(actual):<38}')
        for e, a in zip(expected, actual):
            print(f'{" " if e == a else "*"}{e:<49}{a:<50}')

    def _convert_to_meaning(self, calls):
        meaning = []
        address = None
        for name, args, _ in calls:
            if name != 'transfer_byte':
                meaning.append(f'{name}{args}')
                continue
            if address is None:
                address = args[0]
                continue
            register = (address & ~BIT_MASK_MSB) >> 1
            try:
                register = RC522.Register(register).name
            except ValueError:
                register = f'0x{register:02X}'
            if address & BIT_MASK_MSB:
                meaning.append(f'read({register})')
            else:
                meaning.append(f'write({register}, 0x{int(args[0]):02X})')
            address = None
        return meaning


@pytest.fixture
def transport():
    yield Mock(spec=BusTransport)


@pytest.fixture
def clock():
    """ A clock that never moves, so communicate never times out on its own."""
    yield Mock(return_value=0)


@pytest.fixture
def reader(transport, clock):
    """ An initialized RC522 on top of the mocked transport, the initialize() calls are not recorded."""
    reader = RC522(transport, clock=clock)
    reader.initialized = True
    yield reader


@pytest.fixture
def xfer(transport):
    """ Sets up a Transfers instance and ensures it is asserted after the test. """
    xfer = Transfers(transport)
    yield xfer
    try:
        xfer.assert_calls()
    except AssertionError as e:
        print('The assertion failed, printing debug:')
        TransfersDebug(xfer).print_expected_vs_actual()
        raise e from None
