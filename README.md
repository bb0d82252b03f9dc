# picokeys

Building blocks for the card side of a smart-card style security key.
Commands arrive as raw APDU bytes. They are parsed, sent to the selected
application, and answered with response APDUs. Secure messaging, a file
tree kept in a simulated flash image, and the status-LED blink logic are
also included.

## Modules

- `picokeys.asn1`: BER-TLV helpers.
  - `walk_tlv(data)` yields `Tlv` records with `tag`, `length`, `value`, `offset` and `end`.
  - `find_tag(data, tag)` returns the first value carrying that tag, or `None`.
  - `format_tlv_len(length)` encodes a length in its shortest form (1, 2 or 3 bytes, up to 0xFFFF).
  - `asn1_len_tag(tag, length)` gives the total encoded size of an element.
  - `get_uint(data)` reads up to four bytes as a big-endian integer.
- `picokeys.crypto`: hashing, AES and curve helpers.
  - `hash_multi(data, serial)` hashes the serial followed by the input, repeated until 256 bytes have been fed.
  - `double_hash_pin(pin, serial)` applies `hash_multi` twice and XORs the PIN into the first digest.
  - `hash256` computes SHA-256. `generic_hash(algorithm, data)` accepts any `hashlib` algorithm name.
  - `aes_encrypt` and `aes_decrypt` work in `AesMode.CBC` (no padding) or `AesMode.CFB`. With `iv=None` they use a zero IV.
  - `aes_encrypt_cfb_256` and `aes_decrypt_cfb_256` require a 32-byte key.
  - `ec_get_curve_from_prime(prime)` maps a field prime to an `EcCurve` member, or returns `None`.
  - `KeyType` holds the key-type flags.
- `picokeys.led`: blink patterns and the LED state machine.
  - A blink pattern is a colour plus on and off durations, packed into one integer (`BlinkMode`). `blink_fields(mode)` unpacks it into `BlinkFields`.
  - `Led` calls a driver callback with a `LedColor`. Each call to `tick(now_ms)` moves the blink cycle forward and returns the colour written, or `None`.
  - `set_blink(mode)` changes the pattern. `off()` turns the LED off.
- `picokeys.apdu`: command handling.
  - `parse_apdu(buffer)` decodes short and extended command APDUs into an `Apdu`. It raises `ValueError` on truncated input.
  - `App` is the base class for card applications.
  - `AppRegistry` holds up to four applications and selects one by AID prefix. It raises `LookupError` when no application matches.
  - `CardProcessor.handle(buffer)` turns a raw command into a raw response. It handles command chaining (CLA bit 0x10), SELECT by AID, and splitting long responses with `61xx` / GET RESPONSE.
  - `StatusWord` lists the status words the dispatcher uses.
- `picokeys.eac`: secure messaging.
  - `SecureMessaging` derives the encryption and MAC keys from a shared secret and a nonce (`derive_all_keys`) and signs with AES-CMAC.
  - `verify` checks the MAC of a command. `unwrap` checks and decrypts a command. `wrap` encrypts and MACs a response.
  - Failures raise `SecureMessagingError`, whose `reason` says what went wrong.
  - `is_secured(cla)` reports whether a class byte asks for secure messaging. `remove_padding` strips ISO 7816-4 padding.
- `picokeys.flash`: the simulated flash.
  - `FlashMemory` is a flash image whose writes are staged in a six-page sector cache. It can be backed by a file through `path`.
  - Staged writes reach the image only when `mark_available()` and then `flush()` are called.
  - `FlashStore` allocates file blocks in linked chains inside a data pool and a persistent pool. It also writes file data and clears it.
  - `FlashLayout` describes the geometry. Errors raise `FlashError`.
- `picokeys.filesystem`: the file tree.
  - `FileSystem` is a table of `File` entries plus up to 128 dynamic files.
  - Files can be found by FID, name or path.
  - It also provides ACL checks (`authenticate_action`), FCI output (`process_fci`), and metadata records kept in the `EF_META` file (`meta_find`, `meta_add`, `meta_delete`).
  - `scan_flash()` rebuilds each file's data pointer from the flash chains.

## Example

```python
from picokeys.asn1 import find_tag, format_tlv_len
from picokeys.apdu import parse_apdu
from picokeys.led import BlinkMode, LedColor, blink_fields

assert format_tlv_len(200) == b"\x81\xc8"

tlv = bytes([0x80, 0x02, 0x12, 0x34, 0x81, 0x01, 0xFF])
assert find_tag(tlv, 0x81) == b"\xff"

command = parse_apdu(bytes([0x00, 0xA4, 0x04, 0x00, 0x02, 0xA0, 0x00]))
assert command.data == b"\xa0\x00"

fields = blink_fields(BlinkMode.PROCESSING)
assert (fields.color, fields.on_ms, fields.off_ms) == (LedColor.GREEN, 50, 50)
```

## What this package does not do

This is a library with no command to run.

It has no USB, CCID or HID transport. Raw APDU bytes must be passed to `CardProcessor.handle` by the caller.

It does not drive real LEDs, buttons or one-time-programmable memory. `Led` only calls the driver function you give it.

The flash is an in-memory image, optionally mirrored to a file. It is not device storage.

No concrete card applications are included; subclass `App` to provide one.

## Tests

```
pip install picokeys[test]
pytest
```