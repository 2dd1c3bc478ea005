import copy
import json
import logging
import os
import threading
import time

from markdown_render import is_markdown_title, render_markdown


logger = logging.getLogger(__name__)


class NoteStoreError(Exception):
    pass


def normalize_note_item(raw):
    if not isinstance(raw, dict):
        raise NoteStoreError(f"note entry must be an object, got {type(raw).__name__}")
    title = raw.get('title')
    if not isinstance(title, str):
        raise NoteStoreError("note entry is missing a string title")
    body = raw.get('body')
    shared = raw.get('shared', False)
    if not isinstance(shared, bool):
        raise NoteStoreError(f"note {title!r} has a non-boolean shared flag: {shared!r}")
    return {
        "title": title,
        "body": body if isinstance(body, str) else "",
        "shared": shared,
    }


def parse_notes_payload(payload):
    # An empty collection used to be written as JSON null.
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise NoteStoreError("notes file must contain a JSON array")
    return [normalize_note_item(item) for item in payload]


def write_json_file(file_path, data):
    dir_path = os.path.dirname(file_path) or '.'
    tmp_path = os.path.join(
        dir_path,
        f".{os.path.basename(file_path)}.tmp.{os.getpid()}.{time.time_ns()}"
    )
    try:
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, file_path)

        # Best-effort directory fsync so the rename survives a sudden crash.
        try:
            dir_fd = os.open(dir_path, os.O_DIRECTORY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except OSError:
            pass
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


class NoteStore:
    """Ordered notes collection mirrored to one JSON file.

    Every public method takes the store lock, so callers never need their own
    synchronization. Mutations are applied to a copy of the collection and
    only committed once the copy has been written to disk.
    """

    def __init__(self, notes_file):
        self.notes_file = notes_file
        self._notes = []
        self._lock = threading.Lock()

    def load(self):
        with self._lock:
            if not os.path.exists(self.notes_file):
                os.makedirs(os.path.dirname(self.notes_file) or '.', exist_ok=True)
                self._notes = []
                logger.info("notes_load_fresh file=%s", self.notes_file)
                return
            self._notes = self._read_file()
            logger.info("notes_load_ok file=%s count=%s", self.notes_file, len(self._notes))

    def _read_file(self):
        try:
            with open(self.notes_file, 'r', encoding='utf-8') as f:
                payload = json.load(f)
        except (OSError, ValueError) as exc:
            raise NoteStoreError(f"cannot read notes file {self.notes_file}: {exc}") from exc
        return parse_notes_payload(payload)

    def _find(self, notes, title):
        for index, note in enumerate(notes):
            if note['title'] == title:
                return index
        return None

    def _commit(self, notes):
        try:
            write_json_file(self.notes_file, notes)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("notes_persist_failed file=%s err=%s", self.notes_file, exc)
            raise NoteStoreError(f"cannot write notes file {self.notes_file}: {exc}") from exc
        self._notes = notes

    def get(self, title):
        with self._lock:
            index = self._find(self._notes, title)
            if index is None:
                return None
            return dict(self._notes[index])

    def upsert(self, title, body, render=False):
        if render and is_markdown_title(title):
            body = render_markdown(body)

        with self._lock:
            notes = copy.deepcopy(self._notes)
            index = self._find(notes, title)
            created = index is None
            if created:
                notes.append({"title": title, "body": body, "shared": False})
            else:
                notes[index]['body'] = body
            self._commit(notes)
            return created

    def delete(self, title):
        with self._lock:
            index = self._find(self._notes, title)
            if index is None:
                return False
            notes = copy.deepcopy(self._notes)
            del notes[index]
            self._commit(notes)
            return True

    def mark_shared(self, title):
        with self._lock:
            index = self._find(self._notes, title)
            if index is None:
                return False
            notes = copy.deepcopy(self._notes)
            notes[index]['shared'] = True
            self._commit(notes)
            return True

    def persist(self):
        with self._lock:
            self._commit(copy.deepcopy(self._notes))

    def count(self):
        with self._lock:
            return len(self._notes)

    def storage_size(self):
        with self._lock:
            try:
                return os.path.getsize(self.notes_file)
            except OSError:
                return None

    def health_check(self):
        with self._lock:
            if not os.path.exists(self.notes_file):
                if not os.path.isdir(os.path.dirname(self.notes_file) or '.'):
                    raise NoteStoreError(f"notes directory missing for {self.notes_file}")
                return
            self._read_file()
