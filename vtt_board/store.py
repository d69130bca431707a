"""JSON-file board state store with a version counter kept beside the document."""
import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime

from .errors import PersistenceError
from .normalize import normalize_board_state

logger = logging.getLogger(__name__)

BOARD_STATE_FILE = 'board-state.json'
VERSION_FILE = 'board-state-version.json'
SCENES_FILE = 'scenes.json'
TOKENS_FILE = 'tokens.json'
LOCK_FILE = 'board-state.lock'
BACKUP_DIR = 'backups'


class BoardStateStore:
    """Owns the persisted board document and its version counter.

    ``write_atomic`` holds one mutual-exclusion region (a thread lock plus an
    advisory file lock, so separate worker processes are serialized too) over
    the whole read-modify-write-bump sequence.
    """

    def __init__(self, storage_dir, backup_limit=20):
        self.storage_dir = storage_dir
        self.backup_limit = backup_limit
        self._thread_lock = threading.RLock()
        self._lock_handle = None
        self._lock_depth = 0

    def open(self):
        os.makedirs(self.storage_dir, exist_ok=True)
        if self._lock_handle is None:
            self._lock_handle = open(self._path(LOCK_FILE), 'a+')
        logger.info('Board state store opened at %s', self.storage_dir)
        return self

    def close_connection(self):
        with self._thread_lock:
            if self._lock_handle is not None:
                self._lock_handle.close()
                self._lock_handle = None

    @property
    def is_open(self):
        return self._lock_handle is not None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close_connection()

    def _path(self, filename):
        return os.path.join(self.storage_dir, filename)

    @contextmanager
    def _locked(self):
        if self._lock_handle is None:
            raise PersistenceError('Board state store is not open.')
        with self._thread_lock:
            if self._lock_depth == 0:
                fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_EX)
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
                if self._lock_depth == 0:
                    fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_UN)

    def _load_json(self, filename, default=None):
        path = self._path(filename)
        if not os.path.isfile(path):
            return default
        try:
            with open(path, 'r', encoding='utf-8') as handle:
                contents = handle.read()
        except OSError as e:
            logger.warning('Could not read %s: %s', path, e)
            return default
        if not contents.strip():
            return default
        try:
            return json.loads(contents)
        except ValueError as e:
            logger.error('Corrupt JSON in %s: %s', path, e)
            return default

    def _save_json(self, filename, data, backup=False):
        path = self._path(filename)
        temp_path = path + '.tmp'
        try:
            encoded = json.dumps(data, indent=2)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f'Could not encode {filename}: {e}') from e

        try:
            with open(temp_path, 'w', encoding='utf-8') as handle:
                handle.write(encoded)
            if backup and os.path.isfile(path):
                self._backup(path, filename)
            os.replace(temp_path, path)
        except OSError as e:
            logger.error('Failed to write %s: %s', path, e)
            raise PersistenceError() from e

    def _backup(self, path, filename):
        backup_dir = self._path(BACKUP_DIR)
        os.makedirs(backup_dir, exist_ok=True)
        stem = os.path.splitext(filename)[0]
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
        with open(path, 'r', encoding='utf-8') as source:
            contents = source.read()
        with open(os.path.join(backup_dir, f'{stem}-{timestamp}.json'), 'w', encoding='utf-8') as target:
            target.write(contents)
        self._prune_backups(backup_dir, stem)

    def _prune_backups(self, backup_dir, stem):
        if self.backup_limit is None or self.backup_limit < 0:
            return
        backups = sorted(
            name for name in os.listdir(backup_dir)
            if name.startswith(stem + '-') and name.endswith('.json')
        )
        for name in backups[:max(0, len(backups) - self.backup_limit)]:
            try:
                os.remove(os.path.join(backup_dir, name))
            except OSError as e:
                logger.warning('Could not remove backup %s: %s', name, e)

    def read(self):
        return normalize_board_state(self._load_json(BOARD_STATE_FILE, {}))

    def version(self):
        data = self._load_json(VERSION_FILE, {})
        value = data.get('version') if isinstance(data, dict) else None
        return value if isinstance(value, int) and not isinstance(value, bool) and value >= 0 else 0

    def _bump_version_locked(self):
        version = self.version() + 1
        self._save_json(VERSION_FILE, {'version': version, 'updatedAt': datetime.now().isoformat()})
        return version

    def bump_version(self):
        with self._locked():
            return self._bump_version_locked()

    def write_atomic(self, mutator):
        """Apply ``mutator`` to a copy of the current document and persist the result.

        Returns ``(state, version)``. Nothing is written and the version is
        not bumped when the mutator or the write raises. When the version
        cannot be bumped, the previous document is put back.
        """
        with self._locked():
            draft = self.read()
            result = mutator(draft)
            state = draft if result is None else result
            previous = self._read_raw(BOARD_STATE_FILE)
            self._save_json(BOARD_STATE_FILE, state, backup=True)
            try:
                version = self._bump_version_locked()
            except PersistenceError:
                self._restore_raw(BOARD_STATE_FILE, previous)
                raise
        return state, version

    def _read_raw(self, filename):
        path = self._path(filename)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, 'r', encoding='utf-8') as handle:
                return handle.read()
        except OSError as e:
            logger.error('Failed to read %s: %s', path, e)
            raise PersistenceError() from e

    def _restore_raw(self, filename, contents):
        path = self._path(filename)
        try:
            if contents is None:
                os.remove(path)
                return
            temp_path = path + '.tmp'
            with open(temp_path, 'w', encoding='utf-8') as handle:
                handle.write(contents)
            os.replace(temp_path, path)
        except OSError as e:
            logger.error('Could not restore %s after a failed version bump: %s', path, e)

    def snapshot(self):
        """Complete document tagged with the current version and ``_fullSync``."""
        state = self.read()
        state['_version'] = self.version()
        state['_fullSync'] = True
        return state

    def load_scenes(self):
        return self._load_json(SCENES_FILE, {})

    def load_tokens(self):
        return self._load_json(TOKENS_FILE, {})
