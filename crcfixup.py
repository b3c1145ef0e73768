#!/usr/bin/env python3
#
# CRC-32 fixup (Python)
#
# Copyright (c) 2020 Project Nayuki
# https://www.nayuki.io/page/forcing-a-files-crc-to-any-value
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program (see COPYING.txt).
# If not, see <http://www.gnu.org/licenses/>.
#

import os, sys, zlib, argparse, random
from functools import lru_cache
from typing import BinaryIO, Iterable, List, NamedTuple, Optional, Sequence, Tuple

__version__ = "1.0.0"

# ---- Constants ----
def constant(f):
	def f_set(self, value):
		raise TypeError
	def f_get(self):
		return f()
	return property(f_get, f_set)

class _Const(object):
	@constant
	def POLYNOMIAL() -> int:
		# Reflected generator polynomial, same as zlib/PNG/gzip
		return 0xEDB88320

	@constant
	def INITIAL_VALUE() -> int:
		return 0xFFFFFFFF

	@constant
	def FINAL_XOR() -> int:
		return 0xFFFFFFFF

	@constant
	def MASK() -> int:
		return (1 << 32) - 1

	@constant
	def MAX_VALUE() -> int:
		return (1 << 32) - 1

	@constant
	def MIN_VALUE() -> int:
		return -1 * (1 << 31)

	@constant
	def PATCH_SIZE() -> int:
		return 4

	@constant
	def MAX_FILE_SIZE() -> int:
		return 256 * 1024 * 1024

	@constant
	def CHUNK_SIZE() -> int:
		return 128 * 1024

CONST = _Const()


# ---- Errors ----

# The buffer has no room for the 4-byte patch window at the requested offset
class InvalidLengthError(ValueError):
	pass


# The forward and reverse tables were not built from the same polynomial
class MismatchedTablesError(ValueError):
	pass


# ---- Lookup tables ----

class CrcTables(NamedTuple):
	polynomial: int
	forward: Tuple[int, ...]
	reverse: Tuple[int, ...]


def build_forward_table(polynomial: int) -> Tuple[int, ...]:
	table: List[int] = []
	for n in range(256):
		c: int = n
		for _ in range(8):
			if c & 1 != 0:
				c = (c >> 1) ^ polynomial
			else:
				c >>= 1
		table.append(c)
	return tuple(table)


# Each entry undoes eight bit steps of the forward recurrence for a register
# whose top byte is n and whose lower bytes are zero.
def build_reverse_table(polynomial: int) -> Tuple[int, ...]:
	table: List[int] = []
	for n in range(256):
		c: int = n << 24
		for _ in range(8):
			if c & 0x80000000 != 0:
				c = (((c ^ polynomial) << 1) & CONST.MASK) | 1
			else:
				c = (c << 1) & CONST.MASK
		table.append(c)
	return tuple(table)


# Builds the forward and reverse tables together as one immutable pair.
# The reflected polynomial must be 32 bits wide with its top bit set.
@lru_cache(maxsize=8)
def make_tables(polynomial: int = CONST.POLYNOMIAL) -> CrcTables:
	if not 0x80000000 <= polynomial <= CONST.MASK:
		raise ValueError(f"Polynomial must be a 32-bit value with the top bit set, got 0x{polynomial:X}")
	return CrcTables(polynomial, build_forward_table(polynomial), build_reverse_table(polynomial))


# Raises MismatchedTablesError unless one reverse step inverts one forward
# step for every byte value, under the tagged polynomial.
def verify_tables(tables: CrcTables) -> None:
	forward, reverse = tables.forward, tables.reverse
	if len(forward) != 256 or len(reverse) != 256:
		raise MismatchedTablesError("Lookup tables must have 256 entries each")
	if forward[0x80] != tables.polynomial:
		raise MismatchedTablesError(f"Forward table was not built from polynomial 0x{tables.polynomial:08X}")
	for k in range(256):
		if reverse[forward[k] >> 24] != ((forward[k] << 8) & CONST.MASK) ^ k:
			raise MismatchedTablesError("Reverse table does not invert the forward table")


# ---- Checksum engine ----

# Runs the raw recurrence, without the final XOR.
def crc32_update(register: int, data: Iterable[int], tables: CrcTables) -> int:
	forward = tables.forward
	for b in data:
		register = (register >> 8) ^ forward[(register ^ b) & 0xFF]
	return register


# Walks data from its last byte to its first, undoing one byte of
# crc32_update per step.
def crc32_unwind(register: int, data: Sequence[int], tables: CrcTables) -> int:
	reverse = tables.reverse
	for b in reversed(data):
		register = ((register << 8) & CONST.MASK) ^ reverse[register >> 24] ^ b
	return register


def crc32(buffer, tables: Optional[CrcTables] = None) -> int:
	if tables is None:
		tables = make_tables()
	return crc32_update(CONST.INITIAL_VALUE, buffer, tables) ^ CONST.FINAL_XOR


# ---- Fixup solver ----

def normalize_offset(fix_pos: int, length: int) -> int:
	if length <= 0:
		raise InvalidLengthError("Cannot place an offset in an empty buffer")
	return ((fix_pos % length) + length) % length


# Public library function. The buffer must be a bytearray (or other writable
# buffer) that nothing else mutates for the duration of the call.
# Returns the 4-byte patch value, which is also written little-endian at the
# normalized offset. May raise ValueError (InvalidLengthError,
# MismatchedTablesError).
def fix_crc(buffer: bytearray, target_crc: int, fix_pos: int,
		tables: Optional[CrcTables] = None, printstatus: bool = False) -> int:
	if tables is None:
		tables = make_tables()
	verify_tables(tables)
	if not 0 <= target_crc <= CONST.MAX_VALUE:
		raise ValueError("CRC must be a 32-bit value")
	length: int = len(buffer)
	if length < CONST.PATCH_SIZE:
		raise InvalidLengthError(f"Buffer of {length} bytes has no room for a {CONST.PATCH_SIZE} byte patch")
	offset: int = normalize_offset(fix_pos, length)
	end: int = offset + CONST.PATCH_SIZE
	if end > length:
		raise InvalidLengthError(f"The offset must be at least {CONST.PATCH_SIZE} bytes before the end of the buffer "
				f"(offset {offset}, length {length})")

	if printstatus:
		print(f"Target CRC: 0x{target_crc:08X}")
		print(f"Fix Position: {fix_pos}")

	with memoryview(buffer) as view:
		# Forward pass up to the window; its register becomes the placeholder
		intermediate_crc: int = crc32_update(CONST.INITIAL_VALUE, view[:offset], tables)
		if printstatus:
			print(f"Intermediate CRC: 0x{intermediate_crc:08X}")
		original_bytes: bytes = bytes(view[offset:end])
		view[offset:end] = intermediate_crc.to_bytes(CONST.PATCH_SIZE, "little")

		# Backward pass from the end down to the start of the window
		patch: int = crc32_unwind(target_crc ^ CONST.FINAL_XOR, view[offset:], tables)
		view[offset:end] = patch.to_bytes(CONST.PATCH_SIZE, "little")

	if printstatus:
		print("Corrected Bytes:")
		for i in range(CONST.PATCH_SIZE):
			print(f"  Byte {offset + i}: 0x{original_bytes[i]:02X} -> 0x{(patch >> (i * 8)) & 0xFF:02X}")
	return patch


# ---- Demonstration corruption ----

# Flips every bit of one byte and returns its position. A random position is
# drawn from rng (or the module-level generator) when pos is None; otherwise
# pos is wrapped like a fix offset.
def corrupt_byte(buffer: bytearray, pos: Optional[int] = None, rng: Optional[random.Random] = None) -> int:
	if len(buffer) == 0:
		raise InvalidLengthError("Cannot corrupt an empty buffer")
	if pos is None:
		pos = (rng if rng is not None else random).randrange(len(buffer))
	pos = normalize_offset(pos, len(buffer))
	buffer[pos] ^= 0xFF
	return pos


def print_modification_context(buffer: bytearray, pos: int) -> None:
	print("Modification Context:")
	print(f"  Byte Position: {pos}")

	start: int = max(pos - 4, 0)
	end: int = min(pos + 4, len(buffer))
	print("  Surrounding Bytes Context:")
	for i in range(start, end):
		if i == pos:
			print(f"  > [{i:02d}] 0x{buffer[i]:02X} (Modified)")
		else:
			print(f"    [{i:02d}] 0x{buffer[i]:02X}")

	print("  Binary Representation:")
	b: int = buffer[pos]
	for i in range(7, -1, -1):
		print(f"    Bit {i}: {(b >> i) & 1}")


# ---- File functions ----

def read_file(path: str) -> bytearray:
	with open(path, "rb") as file_stream:
		file_stream.seek(0, os.SEEK_END)
		length: int = file_stream.tell()
		if length <= 0 or length > CONST.MAX_FILE_SIZE:
			raise ValueError(f"Invalid file size: {length} bytes")
		file_stream.seek(0)
		data: bytearray = bytearray(file_stream.read())
	if len(data) != length:
		raise IOError("File read incomplete")
	return data


# Writes a sibling temporary file and moves it over path, so a failed write
# never leaves path truncated.
def write_file(path: str, data: bytearray) -> None:
	tmp_path: str = path + ".tmp"
	try:
		with open(tmp_path, "wb") as file_stream:
			written: int = file_stream.write(data)
		if written != len(data):
			raise IOError("File write incomplete")
		os.replace(tmp_path, path)
	except BaseException:
		if os.path.exists(tmp_path):
			os.remove(tmp_path)
		raise


# Rewrites only the given [start, end) spans of an existing file.
def patch_file(path: str, data: bytearray, spans: Iterable[Tuple[int, int]]) -> None:
	with open(path, "r+b") as file_stream:
		for start, end in spans:
			file_stream.seek(start)
			written: int = file_stream.write(data[start:end])
			if written != end - start:
				raise IOError("File write incomplete")


def get_crc32(file_stream: BinaryIO) -> int:
	file_stream.seek(0)
	crc: int = 0
	while True:
		buffer: bytes = file_stream.read(CONST.CHUNK_SIZE)
		if len(buffer) == 0:
			return crc
		crc = zlib.crc32(buffer, crc)


# Public library function. offset is a signed byte position (negative counts
# from the end), and target_crc is uint32 or None to keep the input's CRC.
# May raise IOError, ValueError, AssertionError.
# With no output_path the input is patched in place, touching only the
# corrupted byte and the 4-byte window.
def modify_file_crc32(input_path: str, output_path: Optional[str] = None, offset: int = -4,
		target_crc: Optional[int] = None, corrupt: bool = False, corrupt_pos: Optional[int] = None,
		rng: Optional[random.Random] = None, printstatus: bool = False) -> int:
	tables: CrcTables = make_tables()

	buffer: bytearray = read_file(input_path)
	original_crc: int = crc32(buffer, tables)
	if target_crc is None:
		target_crc = original_crc
	if printstatus:
		print(f"Current CRC-32: 0x{original_crc:08X}")
		print(f"Target CRC-32:  0x{target_crc:08X}")

	modified_pos: Optional[int] = None
	original_byte: int = 0
	if corrupt or corrupt_pos is not None:
		modified_pos = corrupt_byte(buffer, corrupt_pos, rng)
		original_byte = buffer[modified_pos] ^ 0xFF
		if printstatus:
			print_modification_context(buffer, modified_pos)
			print()

	fix_crc(buffer, target_crc, offset, tables, printstatus)
	if output_path is None:
		output_path = input_path
		fix_start: int = normalize_offset(offset, len(buffer))
		spans: List[Tuple[int, int]] = [(fix_start, fix_start + CONST.PATCH_SIZE)]
		if modified_pos is not None:
			spans.insert(0, (modified_pos, modified_pos + 1))
		patch_file(output_path, buffer, spans)
	else:
		write_file(output_path, buffer)
	if printstatus:
		print("Computed and updated file")

	# Recheck the written file independently of the lookup tables
	with open(output_path, "rb") as file_stream:
		output_crc: int = get_crc32(file_stream)
	if output_crc != target_crc:
		raise AssertionError("Failed to update CRC-32 to desired value")
	if printstatus:
		if modified_pos is not None:
			print(f"\nModified byte at position {modified_pos}: 0x{original_byte:02X} -> 0x{buffer[modified_pos]:02X}")
		print(f"Original CRC: 0x{original_crc:08X}")
		print(f"Modified CRC: 0x{output_crc:08X}")
		if target_crc == original_crc:
			print("CRC Restoration: Successful")
	return output_crc


# ---- ArgParse Functions ----
class SmartFormatter(argparse.ArgumentDefaultsHelpFormatter):
	def add_text(self, text):
		if text is None:
			return super().add_text(text)
		for line in text.split("\0"):
			super().add_text(line)

def crc_value(value: str) -> int:
	try:
		result: int = int(value, 0)
	except ValueError:
		raise argparse.ArgumentTypeError(f"invalid CRC value: {value!r}")
	if result < CONST.MIN_VALUE or result > CONST.MAX_VALUE:
		raise argparse.ArgumentTypeError("CRC must be a 32-bit value")
	if 0 > result:
		return result & CONST.MASK
	return result


# ---- Main application ----

def main(argv: Optional[List[str]] = None) -> Optional[str]:
	parser = argparse.ArgumentParser(
		prog="crcfixup",
		description="""Rewrites 4 bytes of a file so that its CRC-32 equals a chosen value""",
		epilog="""By default the target is the input file's own CRC-32 and the last 4
				bytes are rewritten, so a file corrupted with --corrupt comes out with
				its original checksum.\0\0CRC-32 must be between {min_value} and
				{max_value} or {min_value_hex} and {max_value_hex}. Negative numbers
				will have the standard 2's complement applied to get the CRC hex
				value.""".format(min_value=CONST.MIN_VALUE,
								max_value=CONST.MAX_VALUE,
								min_value_hex="0x{v:08X}".format(v=0),
								max_value_hex="0x{v:08X}".format(v=CONST.MAX_VALUE)),
		formatter_class=SmartFormatter)
	parser.add_argument('-v', '--version', action='version',
			version='%(prog)s {version}'.format(version=__version__))
	parser.add_argument("input", type=str, help="File to read")
	parser.add_argument("output", type=str, nargs='?', default=None, help="File to write, patches input in place when omitted")
	parser.add_argument("--crc", type=crc_value, default=None, help="Target crc. Use 0x to prefix a hex value. Keeps the input's CRC when omitted")
	parser.add_argument("--offset", type=int, default=-4, help="Where to write the new data, negative counts from the end")
	corruption = parser.add_mutually_exclusive_group()
	corruption.add_argument("--corrupt", action="store_true", help="Flip every bit of one random byte before fixing")
	corruption.add_argument("--corrupt-at", type=int, default=None, metavar="POS", help="Flip every bit of the byte at POS before fixing")
	parser.add_argument("--seed", type=int, default=None, help="Seed for the random corruption position")
	parser.add_argument("-q", "--quiet", action="store_true", help="Show only errors")
	args = parser.parse_args(argv)

	try:
		modify_file_crc32(args.input, args.output, args.offset, args.crc,
				corrupt=args.corrupt, corrupt_pos=args.corrupt_at,
				rng=random.Random(args.seed), printstatus=not args.quiet)
	except IOError as e:
		return "I/O error: " + str(e)
	except ValueError as e:
		return "Error: " + str(e)
	except AssertionError as e:
		return "Assertion error: " + str(e)
	return None


def _console_main() -> None:
	errmsg = main()
	if errmsg is not None:
		sys.exit(errmsg)


# ---- Miscellaneous ----

if __name__ == "__main__":
	_console_main()
