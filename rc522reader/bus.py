from abc import ABC, abstractmethod


class BusTransport(ABC):
    """
    The full-duplex, byte at a time bus the RC522 is attached to.

    The chip select brackets exactly one register access, RC522 calls select_chip() before the address byte
    and deselect_chip() after the last data byte.
    """

    @abstractmethod
    def select_chip(self):
        raise NotImplementedError('Method needs to be implemented by each transport.')

    @abstractmethod
    def deselect_chip(self):
        raise NotImplementedError('Method needs to be implemented by each transport.')

    @abstractmethod
    def transfer_byte(self, value):
        """ Sends value and returns the byte clocked in at the same time. """
        raise NotImplementedError('Method needs to be implemented by each transport.')

    @abstractmethod
    def set_clock_rate(self, hz):
        raise NotImplementedError('Method needs to be implemented by each transport.')

    def close(self):
        pass
