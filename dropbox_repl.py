"""Explore the Dropbox v2 HTTP API from an interactive Python session.

Create a client and call the endpoints as methods:

>>> import dropbox_repl
>>> dbx = dropbox_repl.Client.from_env()
>>> dbx.get_current_account()['email']
>>> files = [e for e in dbx.list_entries('') if dropbox_repl.tag_is('file')(e)]

See README.md for full instructions.
"""

from collections.abc import Mapping
from datetime import datetime
import json
import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import requests

__version__ = '0.3.0'

API_URL = 'https://api.dropboxapi.com/2'
CONTENT_URL = 'https://content.dropboxapi.com/2'

DEFAULT_TIMEOUT = 100  # seconds
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

TOKEN_VARIABLE = 'DROPBOX_ACCESS_TOKEN'
TIMEOUT_VARIABLE = 'DROPBOX_TIMEOUT'

LOGGING_FILE_LEVEL = logging.INFO
LOGGING_FILENAME = 'dropbox_repl.log'
LOGGING_CONSOLE_LEVEL = logging.INFO

# Dropbox expects UTC timestamps without fractions or offset
DATE_FORMAT = r'%Y-%m-%dT%H:%M:%SZ'

TAG_FILE = 'file'
TAG_FOLDER = 'folder'
TAG_DELETED = 'deleted'

LocalFile = Union[str, os.PathLike]
Entry = Dict[str, Any]


class HttpError(requests.HTTPError):
    """Dropbox answered with a non-2xx status.

    error is the parsed JSON error body, or the raw text if the body was
    not JSON.
    """

    def __init__(self, response: requests.Response) -> None:
        self.status_code = response.status_code

        try:
            self.error = response.json()
        except ValueError:
            self.error = response.text

        summary = self.error
        if isinstance(self.error, dict):
            summary = self.error.get('error_summary', self.error)

        super().__init__(f'{self.status_code} {summary}', response=response)


def deep_merge(*values: Any) -> Any:
    """Merge mappings recursively, later values winning.

    If any value is not a mapping the last value is returned as it is.
    None of the inputs are modified.
    """
    if not all(isinstance(value, Mapping) for value in values):
        return values[-1]

    merged = {}  # type: Dict[Any, Any]
    for value in values:
        for key, item in value.items():
            if key in merged:
                merged[key] = deep_merge(merged[key], item)
            else:
                merged[key] = deep_merge(item)

    return merged


def normalize_path(path: str) -> str:
    """Return path in the form list_folder expects.

    The root is the empty string and all other paths start with a slash.
    """
    if path in ('', '/'):
        return ''

    if not path.startswith('/'):
        return '/' + path

    return path


def name_from_path(path: str) -> str:
    """Return the last component of a Dropbox path."""
    return path.rstrip('/').split('/')[-1]


def tag_is(tag: str):
    """Return a predicate which is True for entries with the given .tag.

    >>> folders = filter(tag_is(TAG_FOLDER), entries)
    """
    def predicate(entry: Optional[Entry]) -> bool:
        return entry is not None and entry.get('.tag') == tag

    return predicate


def offsets(files: Sequence[LocalFile]) -> List[int]:
    """Return the byte offset of each file in the concatenation of files."""
    result = []
    offset = 0

    for file in files:
        result.append(offset)
        offset += os.path.getsize(file)

    return result


def upload_offsets(files: Sequence[LocalFile]) \
                   -> List[Tuple[int, LocalFile]]:
    """Pair each file with the offset it starts at in an upload session."""
    return list(zip(offsets(files), files))


def _drop_unset(params: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in params.items() if value is not None}


class ListFolderOptions:
    """Optional arguments of files/list_folder.

    Fields left as None are not sent, so Dropbox applies its defaults.
    """

    def __init__(self, recursive: Optional[bool]=None,
                 include_deleted: Optional[bool]=None,
                 include_media_info: Optional[bool]=None,
                 include_has_explicit_shared_members: Optional[bool]=None,
                 include_mounted_folders: Optional[bool]=None,
                 include_non_downloadable_files: Optional[bool]=None,
                 limit: Optional[int]=None) -> None:
        if limit is not None and not 1 <= limit <= 2000:
            raise ValueError(f'limit must be between 1 and 2000, not {limit}')

        self.recursive = recursive
        self.include_deleted = include_deleted
        self.include_media_info = include_media_info
        self.include_has_explicit_shared_members = \
            include_has_explicit_shared_members
        self.include_mounted_folders = include_mounted_folders
        self.include_non_downloadable_files = include_non_downloadable_files
        self.limit = limit

    def to_params(self) -> Dict[str, Any]:
        return _drop_unset(vars(self))


class SearchOptions:
    """Optional arguments of files/search."""

    MODES = ('filename', 'filename_and_content', 'deleted_filename')

    def __init__(self, start: Optional[int]=None,
                 max_results: Optional[int]=None,
                 mode: Optional[str]=None) -> None:
        if start is not None and start < 0:
            raise ValueError(f'start must not be negative, not {start}')

        if max_results is not None and not 1 <= max_results <= 1000:
            raise ValueError('max_results must be between 1 and 1000, '
                             f'not {max_results}')

        if mode is not None and mode not in self.MODES:
            raise ValueError(f'mode must be one of {self.MODES}, not {mode!r}')

        self.start = start
        self.max_results = max_results
        self.mode = mode

    def to_params(self) -> Dict[str, Any]:
        return _drop_unset(vars(self))


class GetMetadataOptions:
    """Optional arguments of files/get_metadata."""

    def __init__(self, include_media_info: Optional[bool]=None,
                 include_deleted: Optional[bool]=None,
                 include_has_explicit_shared_members: Optional[bool]=None) \
                 -> None:
        self.include_media_info = include_media_info
        self.include_deleted = include_deleted
        self.include_has_explicit_shared_members = \
            include_has_explicit_shared_members

    def to_params(self) -> Dict[str, Any]:
        return _drop_unset(vars(self))


class CommitOptions:
    """How an uploaded file is committed.

    Used by files/upload and as the commit of files/upload_session/finish.
    mode 'update' overwrites only if the file on Dropbox is still at rev.
    """

    MODES = ('add', 'overwrite', 'update')

    def __init__(self, mode: Optional[str]=None, rev: Optional[str]=None,
                 autorename: Optional[bool]=None,
                 client_modified: Optional[datetime]=None,
                 mute: Optional[bool]=None,
                 strict_conflict: Optional[bool]=None) -> None:
        if mode is not None and mode not in self.MODES:
            raise ValueError(f'mode must be one of {self.MODES}, not {mode!r}')

        if (mode == 'update') != (rev is not None):
            raise ValueError('rev must be given if and only if mode is update')

        self.mode = mode
        self.rev = rev
        self.autorename = autorename
        self.client_modified = client_modified
        self.mute = mute
        self.strict_conflict = strict_conflict

    def to_params(self) -> Dict[str, Any]:
        params = _drop_unset(vars(self))
        params.pop('rev', None)

        if self.mode == 'update':
            params['mode'] = {'.tag': 'update', 'update': self.rev}

        if self.client_modified is not None:
            params['client_modified'] = \
                self.client_modified.strftime(DATE_FORMAT)

        return params


class SharedLinkMetadataOptions:
    """Optional arguments of sharing/get_shared_link_metadata.

    path selects a file inside a shared folder link.
    """

    def __init__(self, path: Optional[str]=None,
                 link_password: Optional[str]=None) -> None:
        self.path = path
        self.link_password = link_password

    def to_params(self) -> Dict[str, Any]:
        return _drop_unset(vars(self))


def _options_params(options) -> Dict[str, Any]:
    return {} if options is None else options.to_params()


class EntryPager:
    """Iterate the entries of a folder, fetching pages as they are needed.

    The first page comes from files/list_folder and each following page
    from files/list_folder/continue with the cursor of the page before.
    Nothing is requested until the first entry is asked for, and once a
    page says has_more is False no further request is made.

    A pager is used up by iterating it. Create a new one to list again.
    """

    def __init__(self, client: 'Client', path: str,
                 options: Optional[ListFolderOptions]=None) -> None:
        self._client = client
        self._path = path
        self._options = options
        self._page = None  # type: Optional[Dict[str, Any]]
        self._entries = iter(())  # type: Iterator[Entry]
        self.pages_fetched = 0

    @property
    def has_more(self) -> bool:
        """True unless the last page fetched is the final one."""
        return self._page is None or bool(self._page.get('has_more'))

    @property
    def cursor(self) -> Optional[str]:
        """Cursor of the last page fetched, or None before the first."""
        return None if self._page is None else self._page.get('cursor')

    def __iter__(self) -> 'EntryPager':
        return self

    def __next__(self) -> Entry:
        while True:
            try:
                return next(self._entries)
            except StopIteration:
                if not self.has_more:
                    raise

            self._fetch()

    def next_entry(self) -> Optional[Entry]:
        """Return the next entry, or None when there are no more."""
        return next(self, None)

    def _fetch(self) -> None:
        logger = logging.getLogger('dropbox_repl.pager')

        if self._page is None:
            page = self._client.list_folder(self._path, self._options)
        else:
            page = self._client.list_folder_continue(self.cursor)

        self._page = page
        self._entries = iter(page.get('entries', []))
        self.pages_fetched += 1

        logger.info(f'Page {self.pages_fetched} of {self._path!r} has '
                    f'{len(page.get("entries", []))} entries')


class Client:
    """Dropbox v2 API client for one access token.

    Each method calls one endpoint and returns the parsed JSON response.
    Non-2xx responses raise HttpError.
    """

    def __init__(self, token: str, timeout: Optional[float]=DEFAULT_TIMEOUT,
                 session: Optional[requests.Session]=None) -> None:
        self._token = token
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    @classmethod
    def from_env(cls, session: Optional[requests.Session]=None) -> 'Client':
        """Create a client from DROPBOX_ACCESS_TOKEN and DROPBOX_TIMEOUT."""
        try:
            token = os.environ[TOKEN_VARIABLE]

        except KeyError:
            raise KeyError(f'Environment variable {TOKEN_VARIABLE} '
                           'not found') from None

        timeout = float(os.environ.get(TIMEOUT_VARIABLE, DEFAULT_TIMEOUT))
        return cls(token, timeout=timeout, session=session)

    def __repr__(self) -> str:
        return f'{type(self).__name__}(timeout={self.timeout})'

    # Request builders

    def _default_request(self) -> Dict[str, Any]:
        return {'headers': {'Authorization': f'Bearer {self._token}'},
                'timeout': self.timeout}

    def _post(self, url: str, request: Dict[str, Any]) -> requests.Response:
        r = self.session.post(url, **deep_merge(self._default_request(),
                                                request))

        try:
            r.raise_for_status()

        except requests.HTTPError as ex:
            error = HttpError(r)

            if request.get('stream'):
                r.close()

            raise error from ex

        return r

    @staticmethod
    def _json(r: requests.Response) -> Any:
        # Some endpoints answer with an empty body
        return r.json() if r.content else None

    def _rpc_request(self, url: str,
                     params: Optional[Dict[str, Any]]=None) -> Any:
        """POST params as JSON, sending null rather than an empty object."""
        logger = logging.getLogger('dropbox_repl.rpc')
        logger.debug(f'Requesting {url} with {params}')

        request = {'headers': {'Content-Type': 'application/json'},
                   'data': json.dumps(params) if params else 'null'}
        return self._json(self._post(url, request))

    def _upload_request(self, url: str, file: LocalFile,
                        params: Dict[str, Any]) -> Any:
        """POST the bytes of file with params in the Dropbox-API-Arg header."""
        logger = logging.getLogger('dropbox_repl.upload')
        logger.debug(f'Uploading {file} to {url} with {params}')

        with open(file, 'rb') as f:
            request = {'headers': {'Content-Type': 'application/octet-stream',
                                   'Dropbox-API-Arg': json.dumps(params)},
                       'data': f}
            r = self._post(url, request)

        return self._json(r)

    def _download_request(self, url: str,
                          params: Dict[str, Any]) -> requests.Response:
        """POST params in the Dropbox-API-Arg header and stream the reply.

        The caller must close the returned response.
        """
        logger = logging.getLogger('dropbox_repl.download')
        logger.debug(f'Requesting {url} with {params}')

        request = {'headers': {'Dropbox-API-Arg': json.dumps(params)},
                   'stream': True}
        return self._post(url, request)

    # Users

    def get_current_account(self) -> Dict[str, Any]:
        return self._rpc_request(f'{API_URL}/users/get_current_account')

    def get_account(self, account_id: str) -> Dict[str, Any]:
        return self._rpc_request(f'{API_URL}/users/get_account',
                                 {'account_id': account_id})

    def get_account_batch(self, account_ids: Sequence[str]) \
                          -> List[Dict[str, Any]]:
        return self._rpc_request(f'{API_URL}/users/get_account_batch',
                                 {'account_ids': list(account_ids)})

    def get_space_usage(self) -> Dict[str, Any]:
        return self._rpc_request(f'{API_URL}/users/get_space_usage')

    # Files

    def list_folder(self, path: str,
                    options: Optional[ListFolderOptions]=None) \
                    -> Dict[str, Any]:
        """Return the first page of entries in the folder at path."""
        params = {'path': normalize_path(path)}
        params.update(_options_params(options))
        return self._rpc_request(f'{API_URL}/files/list_folder', params)

    def list_folder_continue(self, cursor: str) -> Dict[str, Any]:
        """Return the page of entries following cursor."""
        return self._rpc_request(f'{API_URL}/files/list_folder/continue',
                                 {'cursor': cursor})

    def list_entries_lazy(self, path: str,
                          options: Optional[ListFolderOptions]=None) \
                          -> EntryPager:
        """Return an iterator over all entries below path.

        Recursive unless options say otherwise.
        """
        if options is None:
            options = ListFolderOptions(recursive=True)

        return EntryPager(self, path, options)

    def list_entries(self, path: str,
                     options: Optional[ListFolderOptions]=None) \
                     -> List[Entry]:
        """Return all entries below path, fetching every page."""
        return list(self.list_entries_lazy(path, options))

    def copy(self, from_path: str, to_path: str) -> Dict[str, Any]:
        return self._rpc_request(f'{API_URL}/files/copy',
                                 {'from_path': from_path, 'to_path': to_path})

    def create_folder(self, path: str) -> Dict[str, Any]:
        return self._rpc_request(f'{API_URL}/files/create_folder',
                                 {'path': path})

    def delete(self, path: str) -> Dict[str, Any]:
        return self._rpc_request(f'{API_URL}/files/delete', {'path': path})

    def move(self, from_path: str, to_path: str) -> Dict[str, Any]:
        return self._rpc_request(f'{API_URL}/files/move',
                                 {'from_path': from_path, 'to_path': to_path})

    def search(self, path: str, query: str,
               options: Optional[SearchOptions]=None) -> Dict[str, Any]:
        params = {'path': path, 'query': query}
        params.update(_options_params(options))
        return self._rpc_request(f'{API_URL}/files/search', params)

    def get_metadata(self, path: str,
                     options: Optional[GetMetadataOptions]=None) -> Entry:
        params = {'path': path}
        params.update(_options_params(options))
        return self._rpc_request(f'{API_URL}/files/get_metadata', params)

    def upload(self, file: LocalFile, path: str,
               commit: Optional[CommitOptions]=None) -> Entry:
        """Upload a local file of up to 150 MB to path in one request."""
        params = {'path': path}
        params.update(_options_params(commit))
        return self._upload_request(f'{CONTENT_URL}/files/upload', file,
                                    params)

    def download(self, path: str, dest_dir: LocalFile) -> Path:
        """Save the file at path into dest_dir and return the local path.

        The local name is the name Dropbox reports for the file, which can
        differ from the last part of path (e.g. when path is an id).
        If the copy fails the partly written file is deleted.
        """
        logger = logging.getLogger('dropbox_repl.download')

        with self._download_request(f'{CONTENT_URL}/files/download',
                                    {'path': path}) as r:
            result = json.loads(r.headers['Dropbox-API-Result'])
            local_path = Path(dest_dir, result['name'])

            created = False

            try:
                with open(local_path, 'wb') as f:
                    created = True
                    for chunk in r.iter_content(DOWNLOAD_CHUNK_SIZE):
                        f.write(chunk)

            # Includes KeyboardInterrupt
            except BaseException:
                if created:
                    logger.warning(f'Download of {path} failed. '
                                   f'Deleting {local_path}')
                    local_path.unlink()

                raise

        logger.info(f'Saved {path} as {local_path}')
        return local_path

    def upload_start(self, file: LocalFile) -> Dict[str, Any]:
        """Start an upload session with the bytes of file.

        Returns a dict holding the session_id.
        """
        return self._upload_request(
            f'{CONTENT_URL}/files/upload_session/start', file, {})

    def upload_append(self, file: LocalFile, session_id: str,
                      offset: int) -> Any:
        """Append file to the session. offset is the bytes sent so far."""
        cursor = {'session_id': session_id, 'offset': offset}
        return self._upload_request(
            f'{CONTENT_URL}/files/upload_session/append_v2', file,
            {'cursor': cursor})

    def upload_finish(self, file: LocalFile, session_id: str, offset: int,
                      path: str, commit: Optional[CommitOptions]=None) \
                      -> Entry:
        """Send the last file of the session and save the result at path."""
        params = deep_merge({'cursor': {'session_id': session_id,
                                        'offset': offset},
                             'commit': {'path': path}},
                            {'commit': _options_params(commit)})
        return self._upload_request(
            f'{CONTENT_URL}/files/upload_session/finish', file, params)

    def upload_files(self, files: Sequence[LocalFile], path: str,
                     commit: Optional[CommitOptions]=None) -> Entry:
        """Upload the concatenation of local files as a single file at path.

        Each file is sent in one request, so each must be under 150 MB.
        Nothing is rolled back if a request fails part way.
        """
        logger = logging.getLogger('dropbox_repl.upload')

        if not files:
            raise ValueError('At least one file is required')

        if len(files) == 1:
            return self.upload(files[0], path, commit)

        pairs = upload_offsets(files)
        first, middle, (last_offset, last) = pairs[0], pairs[1:-1], pairs[-1]

        session_id = self.upload_start(first[1])['session_id']
        logger.info(f'Started upload session {session_id} for {path}')

        for offset, file in middle:
            self.upload_append(file, session_id, offset)

        return self.upload_finish(last, session_id, last_offset, path, commit)

    # Sharing

    def get_shared_links(self, path: str='') -> Dict[str, Any]:
        """Return shared links for path, or all links if path is empty."""
        return self._rpc_request(f'{API_URL}/sharing/get_shared_links',
                                 {'path': path})

    def revoke_shared_link(self, url: str) -> Any:
        return self._rpc_request(f'{API_URL}/sharing/revoke_shared_link',
                                 {'url': url})

    def get_shared_link_metadata(
            self, url: str,
            options: Optional[SharedLinkMetadataOptions]=None) -> Entry:
        params = {'url': url}
        params.update(_options_params(options))
        return self._rpc_request(
            f'{API_URL}/sharing/get_shared_link_metadata', params)


def setup_logging(file_level: int=LOGGING_FILE_LEVEL,
                  console_level: int=LOGGING_CONSOLE_LEVEL,
                  filename: str=LOGGING_FILENAME) -> None:
    """Configure logging for an interactive session.

    logging_config.json in the working directory is used if it exists,
    in which case the arguments are ignored.
    """
    DEFAULT_LOGGING = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
            },
            "brief": {
                "format": "%(asctime)s %(levelname)-8s %(message)s",
                "datefmt": "%H:%M:%S"
            }
        },
        "handlers": {
            "console": {
                "formatter": "brief",
                "class": "logging.StreamHandler",
                "level": console_level
            },
            "file": {
                "formatter": "standard",
                "class": "logging.handlers.RotatingFileHandler",
                "filename": filename,
                "maxBytes": 10_000_000,
                "backupCount": 5,
                "level": file_level
            }
        },
        "loggers": {
            # Connection pool messages from requests
            "urllib3": {
                "level": "WARNING"
            }
        },
        "root": {
            "level": min(file_level, console_level),
            "handlers": ["console", "file"]
        }
    }

    try:
        with open('logging_config.json') as f:
            logging.config.dictConfig(json.load(f))

    except FileNotFoundError:
        logging.config.dictConfig(DEFAULT_LOGGING)
