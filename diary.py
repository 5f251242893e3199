#!/usr/bin/env python3
"""Diary — An encrypted, password-protected terminal journal."""

from __future__ import annotations

import calendar
import json
import logging
import os
import re
import select
import struct
import sys
import tempfile
import time
from collections import deque
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import MAXYEAR, MINYEAR, date, timedelta
from enum import Enum
from typing import Optional

import click
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from prompt_toolkit.buffer import Buffer
from prompt_toolkit.data_structures import Size
from prompt_toolkit.document import Document
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.input import create_input
from prompt_toolkit.keys import Keys
from prompt_toolkit.output import create_output
from prompt_toolkit.shortcuts import print_formatted_text
from prompt_toolkit.styles import Style as PtStyle

__version__ = "0.1.0"

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

MAX_CONTAINER_SIZE = 64 * 1024 * 1024
KDF_ITERATIONS = 100_000
POLL_INTERVAL = 0.016
NOTIFICATION_SECONDS = 3.0


# ════════════════════════════════════════════════════════════════════════
#  Data Models
# ════════════════════════════════════════════════════════════════════════

_DATE_RE = re.compile(r"([0-9]{2})-([0-9]{2})-([0-9]{4})")
_MONTHS = (
    "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December",
)


class DateParseError(ValueError):
    """Raised when a string is not a strict DD-MM-YYYY date."""


@dataclass(frozen=True, order=True)
class DateKey:
    """One calendar day. Persisted and typed as ``DD-MM-YYYY``.

    The arithmetic helpers saturate: a result outside the representable
    calendar returns the date unchanged instead of raising, so the date
    picker can call them blindly.
    """
    value: date

    @classmethod
    def parse(cls, text: str) -> DateKey:
        m = _DATE_RE.fullmatch(text) if isinstance(text, str) else None
        if not m:
            raise DateParseError(f"invalid date {text!r}, expected DD-MM-YYYY")
        day, month, year = (int(g) for g in m.groups())
        try:
            return cls(date(year, month, day))
        except ValueError as exc:
            raise DateParseError(f"invalid date {text!r}: {exc}") from exc

    @classmethod
    def today(cls) -> DateKey:
        return cls(date.today())

    def format(self) -> str:
        d = self.value
        return f"{d.day:02d}-{d.month:02d}-{d.year:04d}"

    def friendly(self) -> str:
        """Long display form, e.g. ``01 January, 2024``. Never parsed."""
        d = self.value
        return f"{d.day:02d} {_MONTHS[d.month - 1]}, {d.year}"

    def __str__(self) -> str:
        return self.format()

    def add_days(self, n: int) -> DateKey:
        try:
            return DateKey(self.value + timedelta(days=n))
        except OverflowError:
            return self

    def sub_days(self, n: int) -> DateKey:
        return self.add_days(-n)

    def add_months(self, n: int) -> DateKey:
        # Day is clamped to the length of the target month.
        year, month = divmod(self.value.year * 12 + self.value.month - 1 + n, 12)
        if not MINYEAR <= year <= MAXYEAR:
            return self
        day = min(self.value.day, calendar.monthrange(year, month + 1)[1])
        return DateKey(date(year, month + 1, day))

    def sub_months(self, n: int) -> DateKey:
        return self.add_months(-n)

    def add_years(self, n: int) -> DateKey:
        return self.add_months(12 * n)

    def sub_years(self, n: int) -> DateKey:
        return self.add_months(-12 * n)


@dataclass
class DiaryDocument:
    """Decrypted diary content: entry text keyed by day."""
    entries: dict[DateKey, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Event:
    """A single key press.

    ``key`` is a prompt_toolkit key name (``Keys.ControlS``, ``"escape"``)
    or a single character. ``meta`` marks an Alt/Escape-prefixed character.
    """
    key: str
    data: str = ""
    meta: bool = False

    @classmethod
    def char(cls, c: str) -> Event:
        return cls(c, c)


_ENTER_KEYS = (Keys.ControlM, Keys.ControlJ)


def _is_enter(event: Event) -> bool:
    return not event.meta and event.key in _ENTER_KEYS


# ════════════════════════════════════════════════════════════════════════
#  Errors
# ════════════════════════════════════════════════════════════════════════


class DiaryError(Exception):
    """Base class for every failure reported by DiaryStore."""
    message = "Diary error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


class WrongPassword(DiaryError):
    message = "Wrong Password"


class InvalidFormat(DiaryError):
    """Not a diary container, or a payload that does not fit the schema.

    ``header`` is False when the container decrypted fine but its content
    was malformed; such a file is still recognized as ours.
    """
    message = "Invalid File Format"

    def __init__(self, message: Optional[str] = None, header: bool = True):
        super().__init__(message)
        self.header = header


class OutOfRangeSize(DiaryError):
    message = "File has invalid size"


class NotFound(DiaryError):
    message = "File does not exist"


class NotAccessible(DiaryError):
    message = "Cannot Access File"


# ════════════════════════════════════════════════════════════════════════
#  Storage
# ════════════════════════════════════════════════════════════════════════

# magic, version, PBKDF2 iterations, salt, nonce
_HEADER = struct.Struct(">4sBI16s12s")
MAGIC = b"\x7fDRY"
FORMAT_VERSION = 1
MAX_KDF_ITERATIONS = 10 * KDF_ITERATIONS
_TAG_SIZE = 16


def _password_bytes(password: str) -> bytes:
    # Undecodable argv bytes arrive as lone surrogates; map them back to
    # the raw bytes, and keep any other surrogate deterministic.
    try:
        return password.encode("utf-8", "surrogateescape")
    except UnicodeEncodeError:
        return password.encode("utf-8", "surrogatepass")


def _derive_key(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(_password_bytes(password))


def _encode_payload(document: DiaryDocument) -> bytes:
    entries = {day.format(): text for day, text in sorted(document.entries.items())}
    return json.dumps({"entries": entries}, ensure_ascii=False).encode("utf-8")


def _decode_payload(plaintext: bytes) -> DiaryDocument:
    try:
        data = json.loads(plaintext.decode("utf-8"))
    except ValueError as exc:
        raise InvalidFormat(header=False) from exc
    if (not isinstance(data, dict) or set(data) != {"entries"}
            or not isinstance(data["entries"], dict)):
        raise InvalidFormat(header=False)
    entries = {}
    for key, text in data["entries"].items():
        if not isinstance(text, str):
            raise InvalidFormat(header=False)
        try:
            entries[DateKey.parse(key)] = text
        except DateParseError as exc:
            raise InvalidFormat(header=False) from exc
    return DiaryDocument(entries)


class DiaryStore:
    """Encrypted container files holding one DiaryDocument each.

    Every lower-level failure (I/O, cryptography, JSON) is translated here
    into one of the DiaryError subclasses; nothing else escapes.
    """

    def __init__(self, iterations: int = KDF_ITERATIONS,
                 max_size: int = MAX_CONTAINER_SIZE):
        self.iterations = iterations
        self.max_size = max_size

    def load(self, path: str, password: str) -> DiaryDocument:
        document = _decode_payload(self._open(self._read(path), password))
        logger.info("Loaded %s (%d entries)", path, len(document.entries))
        return document

    def save(self, document: DiaryDocument, path: str, password: str) -> None:
        """Replace the container at ``path`` with ``document``."""
        blob = self._seal(_encode_payload(document), password)
        directory = os.path.dirname(os.path.abspath(path))
        try:
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=".diary-", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(blob)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
                raise
        except OSError as exc:
            raise NotAccessible() from exc
        logger.info("Saved %s (%d entries)", path, len(document.entries))

    def probe(self, path: str) -> bool:
        """True unless ``path`` is not a diary container at all."""
        try:
            self.load(path, "")
        except InvalidFormat as exc:
            return not exc.header
        except DiaryError:
            return True
        return True

    def _read(self, path: str) -> bytes:
        try:
            with open(path, "rb") as f:
                if os.fstat(f.fileno()).st_size > self.max_size:
                    raise OutOfRangeSize()
                blob = f.read(self.max_size + 1)
        except FileNotFoundError as exc:
            raise NotFound() from exc
        except OSError as exc:
            raise NotAccessible() from exc
        if len(blob) > self.max_size:
            raise OutOfRangeSize()
        return blob

    def _seal(self, plaintext: bytes, password: str) -> bytes:
        salt, nonce = os.urandom(16), os.urandom(12)
        header = _HEADER.pack(MAGIC, FORMAT_VERSION, self.iterations, salt, nonce)
        key = _derive_key(password, salt, self.iterations)
        return header + ChaCha20Poly1305(key).encrypt(nonce, plaintext, header)

    def _open(self, blob: bytes, password: str) -> bytes:
        if len(blob) < _HEADER.size + _TAG_SIZE:
            raise InvalidFormat()
        header = blob[:_HEADER.size]
        magic, version, iterations, salt, nonce = _HEADER.unpack(header)
        if magic != MAGIC or version != FORMAT_VERSION:
            raise InvalidFormat()
        if not 1 <= iterations <= MAX_KDF_ITERATIONS:
            raise InvalidFormat()
        key = _derive_key(password, salt, iterations)
        try:
            # The header is authenticated too, so any tampering lands here.
            return ChaCha20Poly1305(key).decrypt(nonce, blob[_HEADER.size:], header)
        except InvalidTag as exc:
            raise WrongPassword() from exc


# ════════════════════════════════════════════════════════════════════════
#  Text Buffers
# ════════════════════════════════════════════════════════════════════════


class EntryBuffer:
    """Editable text backed by a prompt_toolkit Buffer.

    ``input`` applies one key press and reports whether the text changed.
    """

    def __init__(self, text: str = "", multiline: bool = True):
        self.multiline = multiline
        self.buffer = Buffer(multiline=multiline, document=Document(text, 0))
        self._typing = False

    @property
    def text(self) -> str:
        return self.buffer.text

    @property
    def cursor(self) -> tuple[int, int]:
        doc = self.buffer.document
        return doc.cursor_position_row, doc.cursor_position_col

    def lines(self) -> list[str]:
        return list(self.buffer.document.lines)

    def load_from(self, lines) -> None:
        self.buffer.reset(document=Document("\n".join(lines), 0))
        self._typing = False

    def clear(self) -> None:
        self.load_from([""])

    def input(self, event: Event) -> bool:
        buf = self.buffer
        before = buf.text
        key = event.key
        typing = not event.meta and len(key) == 1 and key.isprintable()

        if event.meta:
            pass
        elif typing:
            # Consecutive characters share one undo step.
            if not self._typing:
                buf.save_to_undo_stack()
            buf.insert_text(event.data or key)
        elif key in _ENTER_KEYS:
            if self.multiline:
                buf.save_to_undo_stack()
                buf.newline(copy_margin=False)
        elif key == Keys.ControlI:
            buf.save_to_undo_stack()
            buf.insert_text("    ")
        elif key == Keys.ControlH:
            buf.save_to_undo_stack()
            buf.delete_before_cursor()
        elif key == Keys.Delete:
            buf.save_to_undo_stack()
            buf.delete()
        elif key == Keys.BracketedPaste:
            text = event.data.replace("\r\n", "\n").replace("\r", "\n")
            if not self.multiline:
                text = text.replace("\n", " ")
            buf.save_to_undo_stack()
            buf.insert_text(text)
        elif key == Keys.ControlZ:
            buf.undo()
        elif key == Keys.ControlY:
            buf.redo()
        elif key == Keys.Left:
            buf.cursor_left()
        elif key == Keys.Right:
            buf.cursor_right()
        elif key == Keys.Up:
            buf.cursor_up()
        elif key == Keys.Down:
            buf.cursor_down()
        elif key == Keys.Home:
            buf.cursor_position += buf.document.get_start_of_line_position()
        elif key == Keys.End:
            buf.cursor_position += buf.document.get_end_of_line_position()

        self._typing = typing
        return buf.text != before


class EntryModel:
    """The working set of entries, one EntryBuffer per day."""

    def __init__(self, buffer_factory=EntryBuffer):
        self._factory = buffer_factory
        self._buffers: dict[DateKey, EntryBuffer] = {}

    @classmethod
    def from_document(cls, document: DiaryDocument,
                      buffer_factory=EntryBuffer) -> EntryModel:
        model = cls(buffer_factory)
        for day, text in document.entries.items():
            buf = buffer_factory()
            buf.load_from(text.split("\n"))
            model._buffers[day] = buf
        return model

    def get_or_create(self, day: DateKey) -> EntryBuffer:
        if day not in self._buffers:
            self._buffers[day] = self._factory()
        return self._buffers[day]

    def remove(self, day: DateKey) -> None:
        self._buffers.pop(day, None)

    def dates(self) -> list[DateKey]:
        return sorted(self._buffers)

    def snapshot(self) -> DiaryDocument:
        """Capture the current text of every entry."""
        return DiaryDocument({
            day: "\n".join(buf.lines()) for day, buf in self._buffers.items()
        })

    def __getitem__(self, day: DateKey) -> EntryBuffer:
        return self._buffers[day]

    def __contains__(self, day) -> bool:
        return day in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)


# ════════════════════════════════════════════════════════════════════════
#  Forms
# ════════════════════════════════════════════════════════════════════════


class PasswordForm:
    """New password entry: type it, then retype it to confirm.

    A mismatch clears both fields and starts over at the first one.
    """

    def __init__(self):
        self.fields = (EntryBuffer(multiline=False), EntryBuffer(multiline=False))
        self.active = 0
        self.mismatch = False

    def input(self, event: Event) -> Optional[str]:
        if not _is_enter(event):
            self.fields[self.active].input(event)
            return None
        if self.active == 0:
            self.active = 1
            return None
        first, second = (f.text for f in self.fields)
        if first == second:
            return first
        for f in self.fields:
            f.clear()
        self.active = 0
        self.mismatch = True
        return None


class DateField(Enum):
    DAY = "Day"
    MONTH = "Month"
    YEAR = "Year"


class DateSelection:
    """Day/month/year picker; the focused field is stepped up or down."""

    def __init__(self, day: DateKey):
        self.date = day
        self.field = DateField.DAY

    def increment(self):
        if self.field is DateField.DAY:
            self.date = self.date.add_days(1)
        elif self.field is DateField.MONTH:
            self.date = self.date.add_months(1)
        else:
            self.date = self.date.add_years(1)

    def decrement(self):
        if self.field is DateField.DAY:
            self.date = self.date.sub_days(1)
        elif self.field is DateField.MONTH:
            self.date = self.date.sub_months(1)
        else:
            self.date = self.date.sub_years(1)

    def select_next(self):
        fields = list(DateField)
        self.field = fields[(fields.index(self.field) + 1) % len(fields)]

    def select_prev(self):
        fields = list(DateField)
        self.field = fields[(fields.index(self.field) - 1) % len(fields)]


# ════════════════════════════════════════════════════════════════════════
#  Session
# ════════════════════════════════════════════════════════════════════════


class Mode(Enum):
    GET_FILE = "get-file"
    PASSWORD = "password"
    EDIT = "edit"
    SET_DATE = "set-date"
    DELETE = "delete"
    ASK_TO_SAVE = "ask-to-save"
    EXIT = "exit"


def _with_cursor(text, col, width, style="class:editor"):
    """Fragments for one line with the cursor cell highlighted."""
    start = max(0, col - width + 2)
    text, col = text[start:start + max(1, width - 1)], col - start
    return [
        (style, text[:col]),
        ("class:cursor", text[col:col + 1] or " "),
        (style, text[col + 1:]),
    ]


class Session:
    """The modal diary session.

    One key press at a time goes through ``handle``; ``frame`` renders the
    current mode. Entry content is only reachable once a file has been
    unlocked or created, i.e. once ``entries`` is set.
    """

    def __init__(self, store: DiaryStore, date: Optional[DateKey] = None,
                 buffer_factory=EntryBuffer):
        self.store = store
        self.buffer_factory = buffer_factory
        self.mode = Mode.GET_FILE
        self.path = ""
        self.password = ""
        self.date = date or DateKey.today()
        self.entries: Optional[EntryModel] = None
        self.unsaved = False
        # Path or password being typed
        self.field = EntryBuffer(multiline=False)
        self.hint = ""
        # New file flow
        self.create_path: Optional[str] = None
        self.password_form: Optional[PasswordForm] = None
        # Date picker
        self.picker: Optional[DateSelection] = None
        self.forced_selection = False
        self.notification = ""
        self.notification_expires = 0.0

    # ── Opening ──────────────────────────────────────────────────────

    def open_path(self, path: str) -> None:
        """Try ``path`` without a password and move to the matching mode."""
        path = os.path.expanduser(path)
        self.field.clear()
        try:
            document = self.store.load(path, "")
        except WrongPassword:
            self.path = path
            self.hint = ""
            self._goto(Mode.PASSWORD)
        except NotFound:
            self.create_path = path
        except DiaryError as exc:
            logger.info("Cannot open %s: %s", path, type(exc).__name__)
            self.hint = str(exc)
        else:
            self.path, self.password = path, ""
            self._adopt(document)

    def open_with(self, path: str, password: str) -> None:
        """Load ``path`` with ``password``; DiaryError propagates."""
        document = self.store.load(path, password)
        self.path, self.password = path, password
        self._adopt(document)

    def _adopt(self, document: DiaryDocument) -> None:
        self.entries = EntryModel.from_document(document, self.buffer_factory)
        self.entries.get_or_create(DateKey.today())
        self.entries.get_or_create(self.date)
        self.unsaved = False
        self.hint = ""
        self._goto(Mode.EDIT)

    def _create(self, path: str, password: str) -> None:
        self.create_path = None
        self.password_form = None
        document = DiaryDocument()
        try:
            self.store.save(document, path, password)
        except DiaryError as exc:
            logger.warning("Could not create %s: %s", path, exc)
            self.hint = f"File could not be created: {exc}"
            return
        self.path, self.password = path, password
        self._adopt(document)

    # ── Actions ──────────────────────────────────────────────────────

    def save(self) -> bool:
        document = self.entries.snapshot()
        try:
            self.store.save(document, self.path, self.password)
        except DiaryError as exc:
            logger.warning("Saving %s failed: %s", self.path, exc)
            self.notify(f"Save failed: {exc}")
            return False
        self.unsaved = False
        self.notify("Diary saved.")
        return True

    def notify(self, message: str, duration: float = NOTIFICATION_SECONDS) -> None:
        self.notification = message
        self.notification_expires = time.monotonic() + duration

    def _select_date(self, day: DateKey) -> None:
        self.entries.get_or_create(day)
        self.date = day
        self.forced_selection = False
        self.picker = None
        self._goto(Mode.EDIT)

    def _goto(self, mode: Mode) -> None:
        if mode is Mode.ASK_TO_SAVE and not self.unsaved:
            mode = Mode.EXIT
        elif mode is Mode.SET_DATE:
            self.picker = DateSelection(self.date)
        logger.debug("Mode %s -> %s", self.mode.name, mode.name)
        self.mode = mode

    # ── Input ────────────────────────────────────────────────────────

    def handle(self, event: Event) -> None:
        handler = {
            Mode.GET_FILE: self._handle_get_file,
            Mode.PASSWORD: self._handle_password,
            Mode.EDIT: self._handle_edit,
            Mode.SET_DATE: self._handle_set_date,
            Mode.DELETE: self._handle_delete,
            Mode.ASK_TO_SAVE: self._handle_ask_to_save,
        }.get(self.mode)
        if handler:
            handler(event)

    def _handle_get_file(self, event):
        if self.password_form is not None:
            self._handle_new_password(event)
        elif self.create_path is not None:
            if event.key == "y":
                self.password_form = PasswordForm()
            elif event.key in ("n", Keys.Escape):
                self._goto(Mode.EXIT)
        elif event.key == Keys.Escape:
            self._goto(Mode.EXIT)
        elif _is_enter(event):
            path = self.field.text.strip()
            if path:
                self.open_path(path)
        else:
            self.field.input(event)

    def _handle_new_password(self, event):
        if event.key == Keys.Escape:
            self.password_form = None
            self.create_path = None
            self.hint = "File not created"
            return
        password = self.password_form.input(event)
        if password is not None:
            self._create(self.create_path, password)

    def _handle_password(self, event):
        if event.key == Keys.Escape:
            self._goto(Mode.EXIT)
        elif _is_enter(event):
            password = self.field.text
            self.field.clear()
            try:
                document = self.store.load(self.path, password)
            except DiaryError as exc:
                logger.info("Unlocking %s failed: %s", self.path, type(exc).__name__)
                self.hint = WrongPassword.message
                return
            self.password = password
            self._adopt(document)
        else:
            self.field.input(event)

    def _handle_edit(self, event):
        if event.key == Keys.Escape:
            self._goto(Mode.ASK_TO_SAVE)
        elif event.key == Keys.ControlS:
            self.save()
        elif event.meta and event.key == "d":
            self._goto(Mode.SET_DATE)
        elif event.key == Keys.ControlR:
            self._goto(Mode.DELETE)
        elif self.entries[self.date].input(event):
            self.unsaved = True

    def _handle_ask_to_save(self, event):
        if event.key == "y":
            self._goto(Mode.EXIT)
        elif event.key == "s":
            self._goto(Mode.EXIT if self.save() else Mode.EDIT)
        elif event.key in ("n", Keys.Escape):
            self._goto(Mode.EDIT)

    def _handle_set_date(self, event):
        picker = self.picker
        key = event.key
        if event.meta:
            return
        if key in ("+", " ", Keys.Up):
            picker.increment()
        elif key in ("-", Keys.Down):
            picker.decrement()
        elif key in (Keys.Right, Keys.ControlI):
            picker.select_next()
        elif key == Keys.Left:
            picker.select_prev()
        elif _is_enter(event):
            self._select_date(picker.date)
        elif key == Keys.Escape:
            if self.forced_selection:
                self._select_date(DateKey.today())
            else:
                self.picker = None
                self._goto(Mode.EDIT)

    def _handle_delete(self, event):
        if event.key == "y":
            self.entries.remove(self.date)
            self.unsaved = True
            self.forced_selection = True
            self._goto(Mode.SET_DATE)
        elif event.key in ("n", Keys.Escape):
            self._goto(Mode.EDIT)

    # ── Rendering ────────────────────────────────────────────────────

    def frame(self, size: Optional[Size] = None) -> FormattedText:
        rows, columns = (size.rows, size.columns) if size else (24, 80)
        render = {
            Mode.GET_FILE: self._frame_get_file,
            Mode.PASSWORD: self._frame_password,
            Mode.EDIT: self._frame_edit,
            Mode.SET_DATE: self._frame_set_date,
            Mode.DELETE: self._frame_delete,
            Mode.ASK_TO_SAVE: self._frame_ask_to_save,
        }.get(self.mode)
        return FormattedText(render(rows, columns) if render else [])

    def _current_notification(self):
        if self.notification and time.monotonic() < self.notification_expires:
            return self.notification
        return ""

    def _field_line(self, label, buf, mask=False, active=True):
        text = "*" * len(buf.text) if mask else buf.text
        result = [("class:form-label", f" {label} ")]
        if active:
            result.extend(_with_cursor(text, buf.cursor[1], 60, "class:input"))
        else:
            result.append(("class:input", text or " "))
        return result

    def _frame_get_file(self, rows, columns):
        if self.password_form is not None:
            form = self.password_form
            result = [
                ("class:title bold", f" New password for {self.create_path}"),
                ("class:hint", "  (enter) next (esc) cancel"), ("", "\n\n"),
            ]
            result.extend(self._field_line("Enter password: ", form.fields[0],
                                           mask=True, active=form.active == 0))
            result.append(("", "\n"))
            result.extend(self._field_line("Retype password:", form.fields[1],
                                           mask=True, active=form.active == 1))
            if form.mismatch:
                result.append(("class:accent", "\n\n  Passwords don't match"))
            return result
        if self.create_path is not None:
            return [("class:title bold",
                     f' Do you want to create "{self.create_path}"? (y/n)')]
        result = [
            ("class:title bold", " Diary"),
            ("class:hint", "  (enter) open (esc) quit"), ("", "\n\n"),
        ]
        result.extend(self._field_line("File:", self.field))
        if self.hint:
            result.append(("class:accent", f"\n\n  {self.hint}"))
        return result

    def _frame_password(self, rows, columns):
        result = [
            ("class:title bold", f" Enter password for {self.path}"),
            ("class:hint", "  (enter) unlock (esc) quit"), ("", "\n\n"),
        ]
        result.extend(self._field_line("Password:", self.field, mask=True))
        if self.hint:
            result.append(("class:accent", f"\n\n  {self.hint}"))
        return result

    def _frame_edit(self, rows, columns):
        buf = self.entries[self.date]
        result = [
            ("class:title bold", f" Diary entry: {self.date.friendly()}"),
            ("class:accent", " [+]" if self.unsaved else ""),
            ("class:hint", "  (esc) quit (^s) save (alt+d) date (^r) delete"),
            ("", "\n"),
        ]
        height = max(1, rows - 3)
        lines = buf.lines()
        row, col = buf.cursor
        top = max(0, row - height + 1)
        for index in range(top, top + height):
            if index == row:
                result.extend(_with_cursor(lines[index], col, columns))
            elif index < len(lines):
                result.append(("class:editor", lines[index][:columns - 1]))
            result.append(("", "\n"))
        result.extend(self._dates_line(columns))
        result.append(("", "\n"))
        status = self._current_notification() or f"{self.path}  {len(self.entries)} entries"
        result.append(("class:status", f" {status}".ljust(columns - 1)))
        return result

    def _dates_line(self, columns):
        days = self.entries.dates()
        per_line = max(1, (columns - 12) // 12)
        index = days.index(self.date) if self.date in days else 0
        start = max(0, min(index - per_line // 2, len(days) - per_line))
        result = [("class:form-label", " Dates:")]
        for day in days[start:start + per_line]:
            style = "class:select-list.selected" if day == self.date else ""
            result.append((style, f" {day} "))
        return result

    def _frame_set_date(self, rows, columns):
        picker = self.picker
        d = picker.date.value
        values = {
            DateField.DAY: f"{d.day:02d}",
            DateField.MONTH: _MONTHS[d.month - 1],
            DateField.YEAR: str(d.year),
        }
        result = [
            ("class:title bold", " Choose date"),
            ("class:hint", "  (+/-) change (left/right) field (enter) select (esc) cancel"),
            ("", "\n\n  "),
        ]
        for f in DateField:
            style = "class:select-list.selected" if f is picker.field else "class:input"
            result.append((style, f" {f.value}: {values[f]} "))
            result.append(("", "  "))
        result.append(("class:form-label", f"\n\n  {picker.date.friendly()}"))
        if self.forced_selection:
            result.append(("class:hint", "\n\n  Choose the entry to open next."))
        return result

    def _frame_delete(self, rows, columns):
        return [("class:title bold",
                 f" Do you want to delete the entry for {self.date.friendly()}? (y/n)")]

    def _frame_ask_to_save(self, rows, columns):
        result = [
            ("class:title bold", " Do you want to quit without saving? (y/n)"),
            ("class:hint", "  (s) save and quit"),
        ]
        notification = self._current_notification()
        if notification:
            result.append(("class:accent", f"\n\n  {notification}"))
        return result


# ════════════════════════════════════════════════════════════════════════
#  Terminal
# ════════════════════════════════════════════════════════════════════════

STYLE = PtStyle.from_dict({
    "": "#e0e0e0 bg:#2a2a2a",
    "title": "#e0e0e0",
    "status": "#8a8a8a bg:#333333",
    "hint": "#777777",
    "accent": "#e0af68",
    "input": "bg:#333333 #e0e0e0",
    "editor": "",
    "cursor": "reverse",
    "form-label": "#aaaaaa",
    "select-list.selected": "bg:#444444 bold",
})

_IGNORED_KEYS = (Keys.CPRResponse, Keys.Vt100MouseEvent, Keys.Ignore)


def _events_from_keys(presses) -> list[Event]:
    """Convert prompt_toolkit key presses, folding Escape+char into Alt+char."""
    events = []
    escape = False
    for press in presses:
        key = press.key.value if isinstance(press.key, Keys) else press.key
        if escape:
            escape = False
            if len(key) == 1:
                events.append(Event(key, press.data, meta=True))
                continue
            events.append(Event(Keys.Escape.value))
        if key == Keys.Escape:
            escape = True
        elif key not in _IGNORED_KEYS:
            events.append(Event(key, press.data))
    if escape:
        events.append(Event(Keys.Escape.value))
    return events


class Terminal:
    """Raw-mode keyboard input and full-screen output.

    Use as a context manager: leaving the block restores the terminal,
    whether the session ended normally or with an exception.
    """

    def __init__(self, input=None, output=None, style=STYLE):
        self.style = style
        self._input = input
        self._output = output
        self._stack: Optional[ExitStack] = None
        self._pending: deque[Event] = deque()
        self._last_frame = None

    def __enter__(self) -> Terminal:
        if self._input is None:
            self._input = create_input()
        if self._output is None:
            self._output = create_output()
        with ExitStack() as stack:
            stack.enter_context(self._input.raw_mode())
            self._output.enter_alternate_screen()
            self._output.enable_bracketed_paste()
            stack.callback(self._restore)
            self._output.hide_cursor()
            self._output.flush()
            self._stack = stack.pop_all()
        return self

    def __exit__(self, *exc_info) -> None:
        stack, self._stack = self._stack, None
        if stack is not None:
            stack.close()

    def _restore(self):
        self._output.reset_attributes()
        self._output.disable_bracketed_paste()
        self._output.show_cursor()
        self._output.quit_alternate_screen()
        self._output.flush()

    def size(self) -> Size:
        return self._output.get_size()

    def poll_event(self, timeout: float) -> Optional[Event]:
        if not self._pending:
            ready, _, _ = select.select([self._input.fileno()], [], [], timeout)
            presses = self._input.read_keys() if ready else self._input.flush_keys()
            self._pending.extend(_events_from_keys(presses))
        return self._pending.popleft() if self._pending else None

    def draw(self, frame) -> None:
        fragments = list(frame)
        if fragments == self._last_frame:
            return
        self._last_frame = fragments
        self._output.erase_screen()
        self._output.cursor_goto(0, 0)
        print_formatted_text(FormattedText(fragments), style=self.style,
                             output=self._output, end="")
        self._output.flush()


def run(session: Session, terminal) -> None:
    """Drive ``session`` with events from ``terminal`` until it exits."""
    while session.mode is not Mode.EXIT:
        terminal.draw(session.frame(terminal.size()))
        event = terminal.poll_event(POLL_INTERVAL)
        if event is not None:
            session.handle(event)


# ════════════════════════════════════════════════════════════════════════
#  Entry point
# ════════════════════════════════════════════════════════════════════════


def configure_logging(log_file: Optional[str]) -> None:
    """Send log records to ``log_file``; the terminal belongs to the UI."""
    if not log_file:
        return
    try:
        handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as exc:
        raise click.FileError(log_file, hint=str(exc)) from exc
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def _parse_date_option(ctx, param, value):
    if value is None:
        return None
    try:
        return DateKey.parse(value)
    except DateParseError as exc:
        raise click.BadParameter(str(exc)) from exc


@click.command()
@click.option("-f", "--file", "path", envvar="DIARY_FILE",
              help="Diary file to open or create.")
@click.option("-p", "--password", help="Password of the diary file (requires --file).")
@click.option("-d", "--date", "start_date", callback=_parse_date_option,
              metavar="DD-MM-YYYY", help="Entry to select on startup.")
@click.option("--log-file", envvar="DIARY_LOG", help="Write a log to this file.")
@click.version_option(__version__, prog_name="diary")
def main(path, password, start_date, log_file):
    """Encrypted, password-protected terminal diary."""
    if password is not None and not path:
        raise click.UsageError("--password requires --file")
    configure_logging(log_file)

    session = Session(DiaryStore(), date=start_date)
    if path and password is not None:
        try:
            session.open_with(path, password)
        except DiaryError as exc:
            logger.error("Cannot open %s: %s", path, type(exc).__name__)
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    elif path:
        session.open_path(path)

    with Terminal() as terminal:
        run(session, terminal)


if __name__ == "__main__":
    main()
