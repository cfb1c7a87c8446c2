"""
A driver for NXP Semiconductors MFRC522 (RC522) contactless readers.

The reader talks to the chip through a BusTransport (see rc522reader.bus) so the same code can drive
real SPI hardware or a mock in tests. Register addresses, command codes and bit masks come from NXP's
data-sheet on the MFRC522: https://www.nxp.com/docs/en/data-sheet/MFRC522.pdf.
"""
from collections import namedtuple
from contextlib import contextmanager
from enum import IntEnum, unique
import logging
import time


log = logging.getLogger(__name__)

# A bit mask for the six-digit register values (dropping MSB and LSB)
BIT_MASK_REGISTER = 0b01111110
# The most significant bit, marks a register address as a read
BIT_MASK_MSB = 0b10000000


def write_address(register):
    """
    Returns the register as an appropriately bit-shifted value with the first bit indicating a write operation.

    Registers are represented by a 6-bit value where the LSB is always 0 (zero)
    and the MSB indicates the mode: 0 for write, 1 for read.
    To ensure that the LSB is always zero, we bit shift 1 place to the left.
    To ensure that the MSB is 0, we bitwise AND with 0111 1110
    Example:
      register = 0x03 = 0000 0011
      bit shift << 1 = 0000 0110
      AND with 0111 1110

        0000 0110
      & 0111 1110
      -----------
        0000 0110
    """
    return (int(register) << 1) & BIT_MASK_REGISTER


def read_address(register):
    """ Same as write_address but with the MSB set to 1 to indicate a read. """
    return write_address(register) | BIT_MASK_MSB


def bcc(uid):
    """ Returns the Block Check Character (exclusive-OR of all the bytes) for the uid bytes. """
    rv = 0
    for datum in uid:
        rv ^= datum
    return rv


def uid_to_hex_string(uid, separator=':'):
    """
    Converts the UID to a hex string.

    Args:
        uid: A List of bytes representing the individual UID values
        separator: The string placed between each byte

    Returns:
        A string containing each of the bytes in two digit uppercase HEX format, in the order received.
    """
    return separator.join(f'{digit & 0xFF:0>2X}' for digit in uid)


def _command_name(command):
    return getattr(command, 'name', f'0x{command:02X}')


TransceiveResult = namedtuple('TransceiveResult', ['status', 'data', 'valid_bits'])
TransceiveResult.__doc__ = """
The outcome of a single RC522.communicate call.

status is True on success, data holds the bytes drained from the FIFO and
valid_bits the number of valid bits in the last byte (0 means the whole byte is valid).
"""


def failed():
    """ A fresh failed TransceiveResult, never shared between calls. """
    return TransceiveResult(False, [], 0)


class RC522:
    """
    For reference, here are a couple of terms/acronyms:
      - BCC   ->   Block Check Character, the exclusive-OR of the 4 uid bytes sent back by the PICC after the uid.
      - CRC   ->   Cyclic Redundancy Check, computed by the coprocessor on the chip (CRC_A).
      - FIFO  ->   First In, First Out, the chip's 64 byte transmit/receive buffer.
      - NVB   ->   Number of valid bits, the total number of bytes (high 4 bits) and bits (low 4 bits) we are sending.
      - PCD   ->   Proximity Coupling Device, the RFID reader hardware (this chip).
      - PICC  ->   Proximity Integrated Circuit Card, the tag or card in the field.
    """

    @unique
    class Register(IntEnum):
        # starts and stops command execution
        CommandReg = 0x01
        # enable and disable interrupt request control bits
        CommIEnReg = 0x02
        # interrupt request bits
        CommIrqReg = 0x04
        # interrupt request bits for CRC
        DivIrqReg = 0x05
        # error bits showing the error status of the last command executed
        ErrorReg = 0x06
        # input and output of 64 byte FIFO buffer
        FIFODataReg = 0x09
        # number of bytes stored in the FIFO buffer
        FIFOLevelReg = 0x0A
        # miscellaneous control registers
        ControlReg = 0x0C
        # adjustments for bit-oriented frames
        BitFramingReg = 0x0D
        # defines general modes for transmitting and receiving
        ModeReg = 0x11
        # controls the logical behavior of the antenna driver pins TX1 and TX2
        TxControlReg = 0x14
        # controls the setting of the transmission modulation
        TxAutoReg = 0x15
        # The MSB of the CRC result
        CRCResultRegH = 0x21
        # The LSB of the CRC result
        CRCResultRegL = 0x22
        # timer settings
        TModeReg = 0x2A
        # defines settings for the internal timer
        TPrescalerReg = 0x2B
        # defines the 16-bit timer reload MSB value
        TReloadRegH = 0x2C
        # defines the 16-bit timer reload LSB value
        TReloadRegL = 0x2D

        def read(self):
            return read_address(self)

        def write(self):
            return write_address(self)

    @unique
    class PCDCommand(IntEnum):
        # Stop any in process commands and idle the board
        IDLE = 0x00
        # Activate the CRC coprocessor
        CALCCRC = 0x03
        # Transmit the data in the FIFO buffer
        TRANSMIT = 0x04
        # Activate the receiver circuits
        RECEIVE = 0x08
        # Transmit the FIFO buffer and then activate the receiver
        TRANSCEIVE = 0x0C
        # Perform the MIFARE standard authentication as a reader
        AUTHENT = 0x0E
        # Perform a soft reset of the board
        SOFT_RESET = 0x0F

    # Not unique, SELECTTAG shares its code with ANTICOLL (cascade level 1)
    class PICCCommand(IntEnum):
        # Is there an idle type A card in the field?
        REQIDL = 0x26
        # Wake up all type A cards, including halted ones
        REQALL = 0x52
        # Anti-collision cascade level 1
        ANTICOLL = 0x93
        SELECTTAG = 0x93
        AUTHENT1A = 0x60
        AUTHENT1B = 0x61
        READ = 0x30
        WRITE = 0xA0
        HALT = 0x50

    @unique
    class ReturnCode(IntEnum):
        """ The actual values don't matter, the names are important."""
        # everything is OK
        OK = 0
        # initialize() has not been called yet
        NOT_INITIALIZED = 1
        # There was no tag to read
        NO_CARD = 2
        # The anti-collision transceive failed
        TRANSCEIVE_ERROR = 3
        # The anti-collision response did not contain the uid and BCC
        SHORT_RESPONSE = 4
        # Our countdown completed without the coprocessor finishing
        COUNTDOWN_TIMEOUT = 5
        # The uid was read but the BCC didn't check out
        CHECKSUM_MISMATCH = 6

    # Force a 100% ASK modulation by setting [6] = 1
    ASK_MODULATION = 0b01000000
    # Set TxLastBits to 7 which is the short frame format used by REQA/REQIDL
    BIT_FRAMING_SHORT_FRAME_FORMAT = 0b00000111
    # Every bit of the last byte is transmitted
    BIT_FRAMING_FULL_BYTES = 0b00000000
    # A bit mask for [0] and [1] (Tx1RFEn, Tx2RFEn) which indicate the current power state of the antenna
    BIT_MASK_ANTENNA_POWER = 0b00000011
    # Bit mask for the RX (receive) and Idle (command complete) interrupts
    BIT_MASK_COMIRQ_RX_AND_IDLE = 0b00110000
    # Bit mask for TimerIRq in the CommIrqReg
    BIT_MASK_COMIRQ_TIMER = 0b00000001
    # Nothing to wait for
    BIT_MASK_COMIRQ_NONE = 0b00000000
    # Bit mask for the CRCIRq flag in the DivIrqReg
    BIT_MASK_DIVIRQ_CRCIRQ = 0b00000100
    # Bit mask for RxLastBits [0]-[2] in the ControlReg
    BIT_MASK_RX_LAST_BITS = 0b00000111
    # A bit mask for protocol [0], parity [1], CRC [3] or buffer overflow [4] errors
    BIT_MASK_TRANSCEIVE_ERRORS = 0b00011011
    # Enables every interrupt except HiAlertIEn [3] for the TRANSCEIVE command
    BIT_MASK_TRANSCEIVE_IRQ = 0b01110111
    # Enables IdleIEn [4] and ErrIEn [1] for every other command
    BIT_MASK_COMMAND_IRQ = 0b00010010
    # The size (in bytes) of the FIFO buffer
    FIFO_BUFFER_MAX_SIZE = 64
    # Number of polls of the DivIrqReg before giving up on the CRC coprocessor
    CRC_CHECKS = 255
    # Default SPI clock rate, 1 MHz
    CLOCK_RATE_HZ = 1000000
    # Default wall-clock budget of a single communicate call
    TIMEOUT_MS = 200
    # Default value for the ModeReg
    # Set the CRC preset value to 0x6363 [0]-[1]
    # Set the polarity of MFIN to HIGH [3]
    # Ensure the transmitter can only be started if an RF field is generated [5]
    MODE_DEFAULTS = 0b00111101
    # Anti-collision sends only SEL and NVB, 2 whole bytes
    NVB_TWO_BYTES = 0b00100000
    # The following values configure the timer so the result is a timer delay of ~25 milliseconds
    # TAuto [7] starts the timer at the end of each transmission, the low 4 bits are the high bits of TPrescaler
    # TPrescaler = 0x0D3E = 3390, TReload = 30
    # (TPrescaler * 2 + 1) * (TReload + 1)
    # ------------------------------------
    #     13.56 Mhz (13,560,000)
    # 6781 * 31 / 13560000 = 0.0155 of a second
    TMODE_DEFAULTS = 0b10001101
    TPRESCALER_LOW_EIGHT = 0b00111110
    TRELOAD_HIGH_EIGHT = 0
    TRELOAD_LOW_EIGHT = 30
    # The number of bytes the anti-collision response must contain (4 uid bytes and the BCC)
    UID_WITH_BCC_SIZE = 5
    UID_SIZE = 4

    def __init__(self, transport, clock_rate_hz=CLOCK_RATE_HZ, timeout_ms=TIMEOUT_MS, crc_checks=CRC_CHECKS, clock=None,
                 tolerate_checksum_mismatch=True):
        """
        Args:
            transport: The BusTransport used to talk to the chip.
            clock_rate_hz: The bus clock rate set by initialize().
            timeout_ms: The default wall-clock budget (in milliseconds) of a communicate call.
            crc_checks: How many times to poll the DivIrqReg for the CRC result.
            clock: A callable returning monotonic seconds, defaults to time.monotonic.
            tolerate_checksum_mismatch: If True, read_identifier returns the uid even when the BCC does not match.
        """
        self.transport = transport
        self.clock_rate_hz = clock_rate_hz
        self.timeout_ms = timeout_ms
        self.crc_checks = crc_checks
        self.clock = clock if clock is not None else time.monotonic
        self.tolerate_checksum_mismatch = tolerate_checksum_mismatch
        self.initialized = False

    def initialize(self):
        """ Resets the chip and then sets our defaults."""
        self.transport.set_clock_rate(self.clock_rate_hz)
        self.soft_reset()
        self.write(RC522.Register.TModeReg, RC522.TMODE_DEFAULTS)
        self.write(RC522.Register.TPrescalerReg, RC522.TPRESCALER_LOW_EIGHT)
        self.write(RC522.Register.TReloadRegL, RC522.TRELOAD_LOW_EIGHT)
        self.write(RC522.Register.TReloadRegH, RC522.TRELOAD_HIGH_EIGHT)
        self.write(RC522.Register.TxAutoReg, RC522.ASK_MODULATION)
        self.write(RC522.Register.ModeReg, RC522.MODE_DEFAULTS)
        self.antenna_on()
        self.initialized = True

    def close(self):
        self.initialized = False
        self.transport.close()

    def soft_reset(self):
        """ Executes a soft reset on the chip to reset all registers to default values (internal buffer is not changed)."""
        log.debug('Soft resetting the RC522')
        self.write(RC522.Register.CommandReg, RC522.PCDCommand.SOFT_RESET)

    def antenna_on(self):
        cur_val = self.read(RC522.Register.TxControlReg)
        # Only touch the register if the antenna is currently off
        if (cur_val & RC522.BIT_MASK_ANTENNA_POWER) != RC522.BIT_MASK_ANTENNA_POWER:
            self.write(RC522.Register.TxControlReg, cur_val | RC522.BIT_MASK_ANTENNA_POWER)

    @contextmanager
    def _chip_selected(self):
        self.transport.select_chip()
        try:
            yield
        finally:
            self.transport.deselect_chip()

    def read(self, register):
        """
        Reads a value from the chip and returns the byte read.

        Args:
            register: The RC522.Register (or raw int address) to read from.
        """
        with self._chip_selected():
            self.transport.transfer_byte(read_address(register))
            # The byte clocked in while sending the address is discarded
            return self.transport.transfer_byte(0)

    def write(self, register, value):
        """
        Writes a single byte to the chip.

        Args:
            register: The RC522.Register (or raw int address) to write to.
            value: The byte to write.
        """
        with self._chip_selected():
            self.transport.transfer_byte(write_address(register))
            self.transport.transfer_byte(value)

    def set_bit_mask(self, register, mask):
        """ Reads the current value and then sets the bits in mask to 1. """
        cur_val = self.read(register)
        self.write(register, cur_val | mask)

    def clear_bit_mask(self, register, mask):
        """ Reads the current value and then sets the bits in mask to 0. """
        cur_val = self.read(register)
        self.write(register, cur_val & (~mask))

    def read_raw_register(self, address):
        """ Diagnostic helper, reads any register by address whether or not the chip is initialized. """
        return self.read(address)

    def is_card_present(self):
        """ Returns True if there is an idle type A PICC in the field, False otherwise. """
        if not self.initialized:
            return False
        result = self.request()
        return result.status and len(result.data) > 0

    def request(self):
        """ Sends a REQIDL short frame and returns the TransceiveResult (the ATQA on success). """
        self.write(RC522.Register.BitFramingReg, RC522.BIT_FRAMING_SHORT_FRAME_FORMAT)
        return self.communicate(RC522.PCDCommand.TRANSCEIVE, [RC522.PICCCommand.REQIDL])

    def read_uid(self):
        """
        Runs REQIDL followed by a single cascade level anti-collision to read a 4 byte uid.

        Returns:
            A tuple containing an RC522.ReturnCode and a List of bytes.
            For OK and CHECKSUM_MISMATCH the List is the 4 byte uid.
            For SHORT_RESPONSE the List is whatever came back, otherwise it is empty.
        """
        if not self.initialized:
            return (RC522.ReturnCode.NOT_INITIALIZED, [])

        result = self.request()
        if not result.status or not result.data:
            return (RC522.ReturnCode.NO_CARD, [])

        # Anti-collision frames are byte aligned
        self.write(RC522.Register.BitFramingReg, RC522.BIT_FRAMING_FULL_BYTES)
        result = self.communicate(RC522.PCDCommand.TRANSCEIVE, [RC522.PICCCommand.ANTICOLL, RC522.NVB_TWO_BYTES])
        if not result.status:
            return (RC522.ReturnCode.TRANSCEIVE_ERROR, [])
        if len(result.data) < RC522.UID_WITH_BCC_SIZE:
            return (RC522.ReturnCode.SHORT_RESPONSE, result.data)

        uid = result.data[:RC522.UID_SIZE]
        check = result.data[RC522.UID_SIZE]
        if bcc(uid) != check:
            log.warning('BCC mismatch for uid %s: expected 0x%02X, received 0x%02X', uid_to_hex_string(uid), bcc(uid), check)
            return (RC522.ReturnCode.CHECKSUM_MISMATCH, uid)
        return (RC522.ReturnCode.OK, uid)

    def read_identifier(self):
        """
        Reads the 4 byte uid of the card in the field.

        Returns:
            The uid as a List of 4 bytes, or None if no card could be read.
            A uid with a bad BCC is still returned unless tolerate_checksum_mismatch is False.
        """
        status, uid = self.read_uid()
        if status == RC522.ReturnCode.OK:
            return uid
        if status == RC522.ReturnCode.CHECKSUM_MISMATCH and self.tolerate_checksum_mismatch:
            return uid
        return None

    def wait_for_identifier(self, timeout=None):
        """
        Polls for a card until a uid is read.

        Args:
            timeout: The number of seconds to wait for a read.
                     Accepts floating point numbers (e.g. 1.5, .0001).
                     If the value is None or a negative number, will wait infinitely.
                     If the value is zero, will look for a card only once before timing out.

        Returns:
            The uid as a List of 4 bytes or None if the timeout expired.
        """
        deadline = None
        # timeout = 0 is valid!
        if timeout is not None and timeout > -1:
            deadline = self.clock() + timeout

        while True:
            uid = self.read_identifier()
            if uid is not None:
                return uid
            if deadline is not None and self.clock() >= deadline:
                return None
            time.sleep(0.001)  # Wait a very short time to avoid hogging the CPU

    def halt(self):
        """
        Instructs the PICC in the field to go to the HALT state.

        Returns:
            The TransceiveResult of the HALT command or None if the chip is not initialized.
            A PICC doesn't answer a HALT so a failed status is the normal outcome.
        """
        if not self.initialized:
            return None
        data = [RC522.PICCCommand.HALT, 0x00]
        # A timed out CRC leaves [0, 0] which we send anyway
        _, crc = self.calculate_crc(data)
        return self.communicate(RC522.PCDCommand.TRANSCEIVE, data + crc)

    def calculate_crc(self, data):
        """
        Instructs the PCD to calculate a CRC_A value on the provided data.

        Args:
            data: A List of bytes to calculate the CRC value on.

        Returns:
            A RC522.ReturnCode and a List of 2 bytes (low, high) representing the CRC value.
            If the coprocessor doesn't finish the List is [0, 0] and the code is COUNTDOWN_TIMEOUT.
        """
        self.write(RC522.Register.CommandReg, RC522.PCDCommand.IDLE)

        # With Set2 [7] = 0, writing a 1 to CRCIRq clears it
        self.set_bit_mask(RC522.Register.DivIrqReg, RC522.BIT_MASK_DIVIRQ_CRCIRQ)
        # Flush the FIFO buffer (FlushBuffer [7])
        self.write(RC522.Register.FIFOLevelReg, BIT_MASK_MSB)
        self._write_data_to_fifo(data)

        self.write(RC522.Register.CommandReg, RC522.PCDCommand.CALCCRC)

        for _ in range(self.crc_checks):
            if self.read(RC522.Register.DivIrqReg) & RC522.BIT_MASK_DIVIRQ_CRCIRQ:
                low = self.read(RC522.Register.CRCResultRegL)
                high = self.read(RC522.Register.CRCResultRegH)
                return (RC522.ReturnCode.OK, [low, high])

        log.warning('CRC coprocessor did not finish after %d checks', self.crc_checks)
        return (RC522.ReturnCode.COUNTDOWN_TIMEOUT, [0, 0])

    def communicate(self, command, data, timeout_ms=None):
        """
        Loads data into the FIFO, executes a PCD command and, for TRANSCEIVE, collects the PICC's response.

        Args:
            command: The RC522.PCDCommand to execute.
            data: A List of bytes to load into the FIFO, may be empty.
            timeout_ms: The wall-clock budget in milliseconds, defaults to the reader's timeout_ms.

        Returns:
            A TransceiveResult. On failure, status is False, data is empty and valid_bits is 0.
        """
        start = self.clock()
        if timeout_ms is None:
            timeout_ms = self.timeout_ms

        if command == RC522.PCDCommand.TRANSCEIVE:
            irq_enable = RC522.BIT_MASK_TRANSCEIVE_IRQ
            wait_irq = RC522.BIT_MASK_COMIRQ_RX_AND_IDLE
        else:
            irq_enable = RC522.BIT_MASK_COMMAND_IRQ
            wait_irq = RC522.BIT_MASK_COMIRQ_NONE

        # IRqInv [7] inverts the IRQ pin, Set1 [7] = 0 clears the interrupt bits
        self.write(RC522.Register.CommIEnReg, irq_enable | BIT_MASK_MSB)
        self.clear_bit_mask(RC522.Register.CommIrqReg, BIT_MASK_MSB)
        self.set_bit_mask(RC522.Register.FIFOLevelReg, BIT_MASK_MSB)
        self.write(RC522.Register.CommandReg, RC522.PCDCommand.IDLE)

        self._write_data_to_fifo(data)

        self.write(RC522.Register.CommandReg, command)
        timed_out = False
        try:
            if command == RC522.PCDCommand.TRANSCEIVE:
                # Set StartSend [7] to 1 to start the transmission of data
                self.set_bit_mask(RC522.Register.BitFramingReg, BIT_MASK_MSB)
            if wait_irq:
                timed_out = not self._wait_for_interrupt(wait_irq, start, timeout_ms)
        finally:
            self.clear_bit_mask(RC522.Register.BitFramingReg, BIT_MASK_MSB)

        errors = self.read(RC522.Register.ErrorReg)
        interrupts = self.read(RC522.Register.CommIrqReg)
        if timed_out:
            log.debug('%s did not complete within %sms', _command_name(command), timeout_ms)
            return failed()
        if interrupts & RC522.BIT_MASK_COMIRQ_TIMER:
            log.debug('%s timer expired, no response from the PICC', _command_name(command))
            return failed()
        if errors & RC522.BIT_MASK_TRANSCEIVE_ERRORS:
            log.debug('%s failed, ErrorReg=0x%02X', _command_name(command), errors)
            return failed()

        results = []
        valid_bits = 0
        if command == RC522.PCDCommand.TRANSCEIVE:
            bytes_written = min(self.read(RC522.Register.FIFOLevelReg), RC522.FIFO_BUFFER_MAX_SIZE)
            for _ in range(bytes_written):
                results.append(self.read(RC522.Register.FIFODataReg))
            # 0 (zero) indicates the whole last byte is valid
            valid_bits = self.read(RC522.Register.ControlReg) & RC522.BIT_MASK_RX_LAST_BITS

        return TransceiveResult(True, results, valid_bits)

    def _wait_for_interrupt(self, wait_irq, start, timeout_ms):
        """
        Spins on the CommIrqReg until wait_irq or the timer interrupt fires.

        Returns:
            False if timeout_ms elapsed since start before either interrupt, True otherwise.
        """
        while True:
            interrupts = self.read(RC522.Register.CommIrqReg)
            if interrupts & wait_irq:
                return True
            if interrupts & RC522.BIT_MASK_COMIRQ_TIMER:
                # reported by the validation step
                return True
            if (self.clock() - start) * 1000 > timeout_ms:
                return False

    def _write_data_to_fifo(self, data):
        """ Writes the List of bytes to the FIFO register. """
        for datum in data:
            self.write(RC522.Register.FIFODataReg, datum)
