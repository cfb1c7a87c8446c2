import importlib
import re
import sys
from types import SimpleNamespace
from unittest.mock import Mock, PropertyMock, call, patch

import pytest


# RPi.GPIO constants, the real module only imports on a Raspberry Pi
BOARD = 10
BCM = 11
OUT = 0
HIGH = 1
LOW = 0


@pytest.fixture
def mock_dependencies():
    """
    This fixture provides mocked out versions of RPi.GPIO, spidev and atexit. The hardware modules are swapped
    into sys.modules before rc522reader.transport is imported so the tests run on any machine.
    """
    GPIO = Mock(BOARD=BOARD, BCM=BCM, OUT=OUT, HIGH=HIGH, LOW=LOW)
    GPIO.getmode.return_value = None
    spidev = Mock()
    modules = {
        'RPi': Mock(GPIO=GPIO),
        'RPi.GPIO': GPIO,
        'spidev': spidev,
    }
    with patch.dict(sys.modules, modules):
        # Drop any cached copy so the import binds to the mocks, patch.dict restores sys.modules afterwards
        sys.modules.pop('rc522reader.transport', None)
        transport_module = importlib.import_module('rc522reader.transport')
        with patch.object(transport_module, 'atexit') as atexit:
            spi = spidev.SpiDev.return_value
            # Setup property mocks for the properties we use
            max_speed_hz_property = PropertyMock('max_speed_hz')
            type(spi).max_speed_hz = max_speed_hz_property
            no_cs_property = PropertyMock('no_cs')
            type(spi).no_cs = no_cs_property

            yield SimpleNamespace(** {
                'SpiTransport': transport_module.SpiTransport,
                'spidev': spidev,
                'spi': spi,
                'max_speed_hz_property': max_speed_hz_property,
                'no_cs_property': no_cs_property,
                'GPIO': GPIO,
                'atexit': atexit,
            })


@pytest.fixture
def transport_mocks(mock_dependencies):
    """ Provides a constructed SpiTransport with all the mocks reset after construction."""
    transport = mock_dependencies.SpiTransport()
    # Reset all the mocks so that we start clean
    for mock in vars(mock_dependencies).values():
        if isinstance(mock, Mock):
            mock.reset_mock()
    mock_dependencies.transport = transport
    yield mock_dependencies


@pytest.mark.parametrize(
    ('constructor_args', 'expected_values'),
    [
        (None, {'bus': 0, 'device': 0, 'gpio_mode': BOARD, 'cs_pin': 24, 'rst_pin': 22}),
        ({'bus': 1}, {'bus': 1, 'device': 0, 'gpio_mode': BOARD, 'cs_pin': 24, 'rst_pin': 22}),
        ({'device': 1}, {'bus': 0, 'device': 1, 'gpio_mode': BOARD, 'cs_pin': 24, 'rst_pin': 22}),
        ({'gpio_mode': BCM}, {'bus': 0, 'device': 0, 'gpio_mode': BCM, 'cs_pin': 8, 'rst_pin': 25}),
        ({'cs_pin': 26, 'rst_pin': 18}, {'bus': 0, 'device': 0, 'gpio_mode': BOARD, 'cs_pin': 26, 'rst_pin': 18}),
    ],
    ids=[
        'no-arg',
        'custom bus',
        'custom device',
        'custom gpio_mode',
        'custom pins',
    ]
)
def test_SpiTransport___init__(mock_dependencies, constructor_args, expected_values):
    if constructor_args is None:
        transport = mock_dependencies.SpiTransport()
    else:
        transport = mock_dependencies.SpiTransport(**constructor_args)

    mock_dependencies.spi.open.assert_called_once_with(expected_values['bus'], expected_values['device'])
    mock_dependencies.no_cs_property.assert_called_once_with(True)
    mock_dependencies.GPIO.setmode.assert_called_once_with(expected_values['gpio_mode'])
    mock_dependencies.GPIO.setup.assert_has_calls([
        call(expected_values['cs_pin'], OUT),
        call(expected_values['rst_pin'], OUT),
    ])
    mock_dependencies.GPIO.output.assert_has_calls([
        call(expected_values['cs_pin'], HIGH),
        call(expected_values['rst_pin'], HIGH),
    ])
    mock_dependencies.atexit.register.assert_called_once_with(transport.close)
    assert transport.cs_pin == expected_values['cs_pin']
    assert transport.rst_pin == expected_values['rst_pin']


@pytest.mark.parametrize(
    ('current_gpio_mode', 'gpio_mode', 'rst_pin', 'expected_rst_pin'),
    [
        (BOARD, BOARD, None, 22),
        (BOARD, BOARD, 5, 5),
        (BOARD, BCM, None, 22),
        (BOARD, BCM, 5, None),
        (BCM, BCM, None, 25),
        (BCM, BOARD, None, 25),
        (BCM, BOARD, 5, None),
    ],
    ids=[
        'GPIO mode BOARD, requested BOARD, rst_pin unset',
        'GPIO mode BOARD, requested BOARD, rst_pin set',
        'GPIO mode BOARD, requested BCM, rst_pin unset',
        'GPIO mode BOARD, requested BCM, rst_pin set',
        'GPIO mode BCM, requested BCM, rst_pin unset',
        'GPIO mode BCM, requested BOARD, rst_pin unset',
        'GPIO mode BCM, requested BOARD, rst_pin set',
    ]
)
def test_SpiTransport_setup_gpio(transport_mocks, current_gpio_mode, gpio_mode, rst_pin, expected_rst_pin):
    transport_mocks.GPIO.getmode.return_value = current_gpio_mode

    if expected_rst_pin is None:
        match = re.escape(f'rst_pin ({rst_pin}) were provided but GPIO mode is already set to {current_gpio_mode}.')
        with pytest.raises(ValueError, match=match):
            transport_mocks.transport.setup_gpio(gpio_mode, None, rst_pin)
    else:
        _, used_rst_pin = transport_mocks.transport.setup_gpio(gpio_mode, None, rst_pin)
        assert used_rst_pin == expected_rst_pin
        transport_mocks.GPIO.setmode.assert_not_called()
        transport_mocks.GPIO.setup.assert_called_with(expected_rst_pin, OUT)


def test_SpiTransport_select_chip(transport_mocks):
    transport_mocks.transport.select_chip()
    transport_mocks.transport.deselect_chip()
    assert transport_mocks.GPIO.output.mock_calls == [call(24, LOW), call(24, HIGH)]


def test_SpiTransport_transfer_byte(transport_mocks):
    transport_mocks.spi.xfer2.return_value = [0x3F]
    assert transport_mocks.transport.transfer_byte(0x82) == 0x3F
    transport_mocks.spi.xfer2.assert_called_once_with([0x82])


def test_SpiTransport_set_clock_rate(transport_mocks):
    transport_mocks.transport.set_clock_rate(1000000)
    transport_mocks.max_speed_hz_property.assert_called_once_with(1000000)


@pytest.mark.parametrize(
    ('spi',),
    [
        (True, ),
        (False, ),
    ],
    ids=[
        'spi set',
        'spi None',
    ]
)
def test_SpiTransport_close(transport_mocks, spi):
    if not spi:
        transport_mocks.transport.spi = None
    transport_mocks.transport.close()
    if spi:
        transport_mocks.spi.close.assert_called_once()
        assert transport_mocks.transport.spi is None
    else:
        transport_mocks.spi.close.assert_not_called()
    transport_mocks.GPIO.cleanup.assert_called_once()
