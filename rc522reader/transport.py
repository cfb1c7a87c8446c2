"""
Bus transports used by rc522reader.rc522.RC522 to reach the chip.

SpiTransport drives a RC522 wired to the SPI pins of a Raspberry Pi, the chip select line is driven through
RPi.GPIO so that a single register access (address byte followed by a data byte) stays framed by one select.
"""
import atexit
import logging

import RPi.GPIO as GPIO
import spidev

from rc522reader.bus import BusTransport


log = logging.getLogger(__name__)


class SpiTransport(BusTransport):
    # The default RST pin (GPIO 25) when gpio_mode is set to GPIO.BCM
    GPIO_BCM_RST_DEFAULT = 25
    # The default RST pin (GPIO 25) when gpio_mode is set to GPIO.BOARD (the default)
    GPIO_BOARD_RST_DEFAULT = 22
    # The default chip select pin (CE0, GPIO 8) when gpio_mode is set to GPIO.BCM
    GPIO_BCM_CS_DEFAULT = 8
    # The default chip select pin (CE0, GPIO 8) when gpio_mode is set to GPIO.BOARD
    GPIO_BOARD_CS_DEFAULT = 24

    def __init__(self, bus=0, device=0, gpio_mode=GPIO.BOARD, cs_pin=None, rst_pin=None):
        self.spi = spidev.SpiDev()
        self.spi.open(bus, device)
        # We drive the chip select ourselves
        self.spi.no_cs = True
        self.cs_pin, self.rst_pin = self.setup_gpio(gpio_mode, cs_pin, rst_pin)
        # Make sure we cleanup before we exit
        atexit.register(self.close)

    def setup_gpio(self, gpio_mode, cs_pin, rst_pin):
        """
        Correctly configures the GPIO library.

        Returns:
            A tuple of the chip select and reset pins actually used.
        """
        current_gpio_mode = GPIO.getmode()

        if current_gpio_mode:
            # Something already set the GPIO mode
            if current_gpio_mode != gpio_mode:
                # If no pins were passed in we'll just adopt the current GPIO mode
                if cs_pin or rst_pin:
                    # Can't continue, the pins were passed in and the GPIO modes don't align
                    # if we continue, we'll setup the pins in the wrong place.
                    msg = [
                        f'GPIO mode ({gpio_mode}), cs_pin ({cs_pin}) and rst_pin ({rst_pin}) were provided ',
                        f'but GPIO mode is already set to {current_gpio_mode}. ',
                        'Either change the pins to match the current GPIO mode or determine what other process is setting the GPIO mode.'
                    ]
                    raise ValueError(''.join(msg))
                else:
                    gpio_mode = current_gpio_mode
        else:
            GPIO.setmode(gpio_mode)

        if gpio_mode == GPIO.BCM:
            cs_pin = cs_pin or SpiTransport.GPIO_BCM_CS_DEFAULT
            rst_pin = rst_pin or SpiTransport.GPIO_BCM_RST_DEFAULT
        else:
            cs_pin = cs_pin or SpiTransport.GPIO_BOARD_CS_DEFAULT
            rst_pin = rst_pin or SpiTransport.GPIO_BOARD_RST_DEFAULT

        log.debug('Using GPIO mode %s, cs_pin %s, rst_pin %s', gpio_mode, cs_pin, rst_pin)
        # Chip select is active low so start deselected
        GPIO.setup(cs_pin, GPIO.OUT)
        GPIO.output(cs_pin, GPIO.HIGH)
        # Hold the reset pin high to keep the chip out of hard power down
        GPIO.setup(rst_pin, GPIO.OUT)
        GPIO.output(rst_pin, GPIO.HIGH)
        return cs_pin, rst_pin

    def select_chip(self):
        GPIO.output(self.cs_pin, GPIO.LOW)

    def deselect_chip(self):
        GPIO.output(self.cs_pin, GPIO.HIGH)

    def transfer_byte(self, value):
        return self.spi.xfer2([value])[0]

    def set_clock_rate(self, hz):
        self.spi.max_speed_hz = hz

    def close(self):
        if self.spi:
            self.spi.close()
            self.spi = None
        # Make sure to reset the value of any GPIO pins we've used to be a good citizen
        GPIO.cleanup()
