# chenille: change feeds for a lightweight Couch
# Copyright (C) 2011-2016 Novacut Inc
#
# This file is part of `chenille`.
#
# `chenille` is free software: you can redistribute it and/or modify it under
# the terms of the GNU Lesser General Public License as published by the Free
# Software Foundation, either version 3 of the License, or (at your option) any
# later version.
#
# `chenille` is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranty of MERCHANTABILITY or FITNESS
# FOR A PARTICULAR PURPOSE.  See the GNU Lesser General Public License for more
# details.
#
# You should have received a copy of the GNU Lesser General Public License along
# with `chenille`.  If not, see <http://www.gnu.org/licenses/>.
#
# Authors:
#   Jason Gerard DeRose <jderose@novacut.com>
#

"""
`chenille` - change feeds for a lightweight Couch.

Chenille is a small adapter for making HTTP requests to CouchDB.  Rather than
wrapping the whole API in one-off methods, the `CouchBase` class makes it easy
to call any part of the CouchDB REST API, current or future.  On top of that
there are a few `Database` niceties for documents, attachments, bulk
operations and design documents.

The one part that isn't a simple request/response wrapper is the ``_changes``
feed, which lives in `chenille.changes`:

    * `open_feed()` opens a streaming ``_changes`` request on a dedicated
      connection and returns a `ChangeStream` of `ChangeEvent` tuples

    * `ChangeConsumer` runs a feed in a background thread, with start/stop
      control and subscriber notification
"""

from io import BufferedReader
import os
from base64 import b64encode
import json
from urllib.parse import urlparse, urlencode, ParseResult
import ssl
import threading
import platform
from collections import namedtuple
import logging

from dbase32 import random_id, RANDOM_B32LEN
from degu.client import Client, SSLClient, build_client_sslctx


__all__ = (
    'random_id',

    'Server',
    'Database',

    'BadRequest',
    'Unauthorized',
    'Forbidden',
    'NotFound',
    'MethodNotAllowed',
    'NotAcceptable',
    'Conflict',
    'PreconditionFailed',
    'BadContentType',
    'BadRangeRequest',
    'ExpectationFailed',
    'DatabaseNotFound',
    'ParseError',
    'InvalidState',

    'ServerError',
)

__version__ = '26.10.0'
log = logging.getLogger()
USER_AGENT = 'Chenille/{} ({} {}; {})'.format(__version__,
    platform.system(), platform.release(), platform.machine()
)

HTTP_IPv4_URL = 'http://127.0.0.1:5984/'
HTTPS_IPv4_URL = 'https://127.0.0.1:6984/'
HTTP_IPv6_URL = 'http://[::1]:5984/'
HTTPS_IPv6_URL = 'https://[::1]:6984/'
URL_CONSTANTS = (
    HTTP_IPv4_URL,
    HTTPS_IPv4_URL,
    HTTP_IPv6_URL,
    HTTPS_IPv6_URL,
)
DEFAULT_URL = HTTP_IPv4_URL

# The highest character CouchDB collates, handy as a view key suffix:
WILDCARD = '\ufff0'

Attachment = namedtuple('Attachment', 'content_type data')


def create_client(url, **options):
    """
    Convenience function to create a `degu.client.Client` from a URL.

    For example:

    >>> create_client('http://www.example.com/')
    Client(('www.example.com', 80))

    """
    t = (url if isinstance(url, ParseResult) else urlparse(url))
    if t.scheme != 'http':
        raise ValueError("scheme must be 'http', got {!r}".format(t.scheme))
    port = (80 if t.port is None else t.port)
    return Client((t.hostname, port), **options)


def create_sslclient(sslctx, url, **options):
    """
    Convenience function to create an `SSLClient` from a URL.
    """
    t = (url if isinstance(url, ParseResult) else urlparse(url))
    if t.scheme != 'https':
        raise ValueError("scheme must be 'https', got {!r}".format(t.scheme))
    port = (443 if t.port is None else t.port)
    return SSLClient(sslctx, (t.hostname, port), **options)


class BulkConflict(Exception):
    """
    Raised by `Database.save_many()` when one or more conflicts occur.
    """
    def __init__(self, conflicts, rows):
        self.conflicts = conflicts
        self.rows = rows
        count = len(conflicts)
        msg = ('conflict on {} doc' if count == 1 else 'conflict on {} docs')
        super().__init__(msg.format(count))


class HTTPError(Exception):
    """
    Base class for exceptions raised based on HTTP response status.
    """

    def __init__(self, response, method, url):
        self.response = response
        self.data = (b'' if response.body is None else response.body.read())
        self.method = method
        self.url = url
        super().__init__()

    def __str__(self):
        return '{} {}: {} {}'.format(
            self.response.status, self.response.reason, self.method, self.url
        )


class ClientError(HTTPError):
    """
    Base class for all 4xx Client Error exceptions.
    """


class BadRequest(ClientError):
    '400 Bad Request'

class Unauthorized(ClientError):
    '401 Unauthorized'

class Forbidden(ClientError):
    '403 Forbidden'

class NotFound(ClientError):
    '404 Not Found'

class MethodNotAllowed(ClientError):
    '405 Method Not Allowed'

class NotAcceptable(ClientError):
    '406 Not Acceptable'

class Conflict(ClientError):
    '409 Conflict'

class Gone(ClientError):
    '410 Gone'

class LengthRequired(ClientError):
    '411 Length Required'

class PreconditionFailed(ClientError):
    '412 Precondition Failed'

class BadContentType(ClientError):
    '415 Unsupported Media Type'

class BadRangeRequest(ClientError):
    '416 Requested Range Not Satisfiable'

class ExpectationFailed(ClientError):
    '417 Expectation Failed'

class EnhanceYourCalm(ClientError):
    '420 Enhance Your Calm'


class ServerError(HTTPError):
    """
    Used to raise exceptions for any 5xx Server Errors.
    """


class DatabaseNotFound(NotFound):
    """
    Raised when the database behind a ``_changes`` feed does not exist.
    """


class ParseError(ValueError):
    """
    Raised when a ``_changes`` feed sends something that isn't a change.
    """

    def __init__(self, msg, line):
        self.line = line
        super().__init__(msg)


class InvalidState(Exception):
    """
    Raised when a `ChangeConsumer` is asked to do something its state forbids.
    """


errors = {
    400: BadRequest,
    401: Unauthorized,
    403: Forbidden,
    404: NotFound,
    405: MethodNotAllowed,
    406: NotAcceptable,
    409: Conflict,
    410: Gone,
    411: LengthRequired,
    412: PreconditionFailed,
    415: BadContentType,
    416: BadRangeRequest,
    417: ExpectationFailed,
    420: EnhanceYourCalm,
}

# Used for requests where a 404 means the whole database is missing:
db_errors = dict(errors)
db_errors[404] = DatabaseNotFound


def check_response(response, method, path, error_map=None):
    """
    Raise the appropriate `HTTPError` if *response* has a 4xx or 5xx status.
    """
    if response.status >= 500:
        raise ServerError(response, method, path)
    if response.status >= 400:
        E = (errors if error_map is None else error_map).get(
            response.status, ClientError
        )
        raise E(response, method, path)
    return response


def dumps(obj, pretty=False):
    """
    Safe and opinionated use of ``json.dumps()``.

    This function always calls ``json.dumps()`` with *ensure_ascii=False* and
    *sort_keys=True*.

    For example:

    >>> doc = {
    ...     'hello': 'мир',
    ...     'welcome': 'все',
    ... }
    >>> dumps(doc)
    '{"hello":"мир","welcome":"все"}'

    By default compact encoding is used, but if you supply *pretty=True*,
    4-space indentation will be used:

    >>> print(dumps(doc, pretty=True))
    {
        "hello": "мир",
        "welcome": "все"
    }

    """
    if pretty:
        return json.dumps(obj,
            ensure_ascii=False,
            sort_keys=True,
            separators=(',',': '),
            indent=4,
        )
    return json.dumps(obj,
        ensure_ascii=False,
        sort_keys=True,
        separators=(',',':'),
    )


def _json_body(obj):
    if obj is None:
        return None
    if isinstance(obj, (bytes, BufferedReader)):
        return obj
    return dumps(obj).encode()


def encode_attachment(attachment):
    """
    Encode *attachment* for use in ``doc['_attachments']``.

    For example:

    >>> attachment = Attachment('image/png', b'PNG data')
    >>> dumps(encode_attachment(attachment))
    '{"content_type":"image/png","data":"UE5HIGRhdGE="}'

    :param attachment: an `Attachment` namedtuple
    """
    if not (isinstance(attachment, tuple) and len(attachment) == 2):
        raise TypeError(
            'attachment must be an `Attachment`; got {!r}'.format(attachment)
        )
    (content_type, data) = attachment
    if not isinstance(content_type, str):
        raise TypeError(
            'content_type must be a `str`; got {!r}'.format(content_type)
        )
    return {
        'content_type': content_type,
        'data': b64encode(data).decode(),
    }


def has_attachment(doc, name):
    """
    Return True if *doc* has an attachment named *name*.

    >>> has_attachment({}, 'thumbnail')
    False
    >>> has_attachment({'_attachments': {'thumbnail': {}}}, 'thumbnail')
    True

    """
    try:
        doc['_attachments'][name]
        return True
    except KeyError:
        return False


def add_missing_view_keys(low, high, options):
    """
    Return *options* with "startkey" and "endkey" added when missing.

    The *low* and *high* keys are swapped when *options* asks for a
    descending view:

    >>> sorted(add_missing_view_keys('a', 'z', {}).items())
    [('endkey', 'z'), ('startkey', 'a')]
    >>> sorted(add_missing_view_keys('a', 'z', {'descending': True}).items())
    [('descending', True), ('endkey', 'a'), ('startkey', 'z')]

    """
    if options.get('descending'):
        (low, high) = (high, low)
    result = {'startkey': low, 'endkey': high}
    result.update(options)
    return result


def _queryiter(options):
    """
    Return appropriately encoded (key, value) pairs sorted by key.

    We JSON encode the value if the key is "key", "startkey", or "endkey", or
    if the value is not an ``str``.
    """
    for key in sorted(options):
        value = options[key]
        if key in ('key', 'startkey', 'endkey') or not isinstance(value, str):
            value = json.dumps(value, sort_keys=True, separators=(',',':'))
        yield (key, value)


def basic_auth_header(basic):
    b = '{username}:{password}'.format(**basic).encode()
    return 'Basic ' + b64encode(b).decode()


REPLICATION_KW = frozenset([
    'cancel',
    'continuous',
    'create_target',
    'doc_ids',
    'filter',
    'proxy',
    'query_params',
])


def replication_body(source, target, **kw):
    if not REPLICATION_KW.issuperset(kw):
        unsupported = sorted(set(kw) - REPLICATION_KW)
        raise ValueError(
            'unsupported replication options: {!r}'.format(unsupported)
        )
    body = {
        'source': source,
        'target': target,
    }
    body.update(kw)
    return body


def _start_thread(target, *args):
    thread = threading.Thread(target=target, args=args)
    thread.daemon = True
    thread.start()
    return thread


def build_ssl_context(config):
    if 'context' in config:
        ctx = config['context']
        if not isinstance(ctx, ssl.SSLContext):
            raise TypeError(
                'context must be an `ssl.SSLContext`; got {!r}'.format(ctx)
            )
        if ctx.verify_mode != ssl.CERT_REQUIRED:
            raise ValueError('context.verify_mode must be ssl.CERT_REQUIRED')
        return ctx
    return build_client_sslctx(config)


class Context:
    """
    Reuse TCP connections between multiple `CouchBase` instances.

    Individual `Server` and `Database` instances automatically reuse their
    connection: each thread gets its own thread-local connection that will
    transparently be reused.

    To share connections (and an ``ssl.SSLContext``) among several instances
    using the same *env*, create them with the same `Context`:

    >>> ctx = Context('http://127.0.0.1:5984/')
    >>> foo = Database('foo', ctx=ctx)
    >>> bar = Database('bar', ctx=ctx)
    >>> foo.ctx is bar.ctx
    True

    A ``_changes`` feed never uses the thread-local connection; see
    `CouchBase.connect()`.
    """

    __slots__ = ('env', 'basepath', 't', 'url', 'threadlocal', 'client')

    def __init__(self, env=None):
        if env is None:
            env = DEFAULT_URL
        if not isinstance(env, (dict, str)):
            raise TypeError(
                'env must be a `dict` or `str`; got {!r}'.format(env)
            )
        self.env = ({'url': env} if isinstance(env, str) else env)
        url = self.env.get('url', DEFAULT_URL)
        t = urlparse(url)
        if t.scheme not in ('http', 'https'):
            raise ValueError(
                'url scheme must be http or https; got {!r}'.format(url)
            )
        if not t.netloc:
            raise ValueError('bad url: {!r}'.format(url))
        self.basepath = (t.path if t.path.endswith('/') else t.path + '/')
        self.t = t
        self.url = self.full_url(self.basepath)
        self.threadlocal = threading.local()
        if t.scheme == 'https':
            sslconfig = self.env.get('ssl', {})
            sslctx = build_ssl_context(sslconfig)
            self.client = create_sslclient(sslctx, self.t)
        else:
            self.client = create_client(self.t)

    def full_url(self, path):
        return ''.join([self.t.scheme, '://', self.t.netloc, path])

    def get_threadlocal_connection(self):
        conn = getattr(self.threadlocal, 'connection', None)
        if conn is None or conn.closed:
            conn = self.client.connect()
            self.threadlocal.connection = conn
        return conn

    def get_auth_headers(self):
        if 'basic' in self.env:
            return {'authorization': basic_auth_header(self.env['basic'])}
        return {}


class CouchBase(object):
    """
    Base class for `Server` and `Database`.

    This class is a simple adapter to make it easy to call a JSON loving REST
    API like CouchDB.  To simplify things, there are some assumptions we can
    make:

        * Request bodies are empty or JSON, except when you PUT an attachment

        * Response bodies are JSON, except when you GET an attachment

    With just 7 methods you can access the entire CouchDB API:

        * `CouchBase.post()`
        * `CouchBase.put()`
        * `CouchBase.get()`
        * `CouchBase.delete()`
        * `CouchBase.head()`
        * `CouchBase.put_att()`
        * `CouchBase.get_att()`
    """

    def __init__(self, env=None, ctx=None):
        self.ctx = (Context(env) if ctx is None else ctx)
        self.env = self.ctx.env
        self.basepath = self.ctx.basepath
        self.url = self.ctx.url

    def connect(self):
        """
        Return a new, dedicated ``degu.client.Connection``.

        Unlike the thread-local connection used by `CouchBase.request()`, the
        caller owns this connection and must close it.
        """
        return self.ctx.client.connect()

    def raw_request(self, method, path, body, headers):
        conn = self.ctx.get_threadlocal_connection()

        # Hack for API compatabilty back to when `http.client` was used
        # instead of `degu.client`:
        if isinstance(body, BufferedReader):
            if 'content-length' in headers:
                content_length = headers['content-length']
            else:
                content_length = os.stat(body.fileno()).st_size
            body = conn.api.Body(body, content_length)

        # We automatically retry once in case connection was closed by server:
        try:
            return conn.request(method, path, headers, body)
        except ConnectionError:
            pass
        conn = self.ctx.get_threadlocal_connection()
        return conn.request(method, path, headers, body)

    def prepare(self, parts, options, headers=None):
        """
        Return the ``(path, headers)`` needed to request *parts*.
        """
        h = {'user-agent': USER_AGENT}
        if headers:
            h.update(headers)
        path = (self.basepath + '/'.join(parts) if parts else self.basepath)
        query = (tuple(_queryiter(options)) if options else tuple())
        h.update(self.ctx.get_auth_headers())
        if query:
            path = '?'.join([path, urlencode(query)])
        return (path, h)

    def request(self, method, parts, options, body=None, headers=None,
            error_map=None):
        (path, h) = self.prepare(parts, options, headers)
        response = self.raw_request(method, path, body, h)
        return check_response(response, method, path, error_map)

    def recv_json(self, method, parts, options, body=None, headers=None,
            error_map=None):
        if headers is None:
            headers = {}
        headers['accept'] = 'application/json'
        response = self.request(method, parts, options, body, headers,
            error_map
        )
        data = (b'' if response.body is None else response.body.read())
        return json.loads(data.decode())

    def post(self, obj, *parts, **options):
        """
        POST *obj*.

        For example, to create the doc "bar" in the database "foo":

        >>> cb = CouchBase()
        >>> cb.post({'_id': 'bar'}, 'foo')  #doctest: +SKIP
        {'rev': '1-967a00dff5e02add41819138abb3284d', 'ok': True, 'id': 'bar'}

        """
        return self.recv_json('POST', parts, options, _json_body(obj),
            {'content-type': 'application/json'}
        )

    def put(self, obj, *parts, **options):
        """
        PUT *obj*.

        For example, to create the database "foo":

        >>> cb = CouchBase()
        >>> cb.put(None, 'foo')  #doctest: +SKIP
        {'ok': True}

        """
        return self.recv_json('PUT', parts, options, _json_body(obj),
            {'content-type': 'application/json'}
        )

    def get(self, *parts, **options):
        """
        Make a GET request.

        For example, to request the doc "bar" from the database "foo",
        including any attachments:

        >>> cb = CouchBase()
        >>> cb.get('foo', 'bar', attachments=True)  #doctest: +SKIP
        {'_rev': '1-967a00dff5e02add41819138abb3284d', '_id': 'bar'}
        """
        return self.recv_json('GET', parts, options)

    def delete(self, *parts, **options):
        """
        Make a DELETE request.

        For example, to delete the doc "bar" in the database "foo":

        >>> cb = CouchBase()
        >>> cb.delete('foo', 'bar', rev='1-fae0708c46b4a6c9c497c3a687170ad6')  #doctest: +SKIP
        {'rev': '2-18995243f0ebd1066fcb191a28d1222a', 'ok': True, 'id': 'bar'}

        """
        return self.recv_json('DELETE', parts, options)

    def head(self, *parts, **options):
        """
        Make a HEAD request.

        Returns a ``dict`` containing the response headers from the HEAD
        request.
        """
        response = self.request('HEAD', parts, options)
        return response.headers

    def put_att(self, mime, data, *parts, **options):
        """
        PUT an attachment.

        For example, to upload the attachment "baz" for the doc "bar" in the
        database "foo":

        >>> cb = CouchBase()
        >>> cb.put_att('image/png', b'da pic', 'foo', 'bar', 'baz')  #doctest: +SKIP
        {'rev': '1-f759cc40458cdd5bd8ae379174bc53d9', 'ok': True, 'id': 'bar'}

        :param mime: The Content-Type, eg ``'image/jpeg'``
        :param data: a ``bytes`` instance or an open file
        :param parts: path components to construct URL relative to base path
        :param options: optional keyword arguments to include in query
        """
        return self.recv_json('PUT', parts, options, data,
            {'content-type': mime}
        )

    def get_att(self, *parts, **options):
        """
        GET an attachment.

        Returns an `Attachment` namedtuple with the Content-Type and data:

        >>> cb = CouchBase()
        >>> cb.get_att('foo', 'bar', 'baz')  #doctest: +SKIP
        Attachment(content_type='image/png', data=b'da pic')

        """
        response = self.request('GET', parts, options)
        content_type = response.headers['content-type']
        data = (b'' if response.body is None else response.body.read())
        return Attachment(content_type, data)


class Server(CouchBase):
    """
    All the `CouchBase` methods plus some server-specific niceties.

    For example:

    >>> s = Server('http://localhost:5984/')
    >>> s
    Server('http://localhost:5984/')
    >>> s.basepath
    '/'

    """

    def __repr__(self):
        return '{}({!r})'.format(self.__class__.__name__, self.url)

    def database(self, name, ensure=False):
        """
        Create a `Database` with the same `Context` as this `Server`.
        """
        db = Database(name, ctx=self.ctx)
        if ensure:
            db.ensure()
        return db

    def all_dbs(self):
        return self.get('_all_dbs')

    def replicate(self, source, target, **kw):
        """
        POST to /_replicate to copy every doc in *source* into *target*.

        *source* and *target* are database names or full URLs.
        """
        return self.post(replication_body(source, target, **kw), '_replicate')

    def configure_view_server(self, exec_string, language='python'):
        """
        Register the query server command *exec_string* for *language*.

        This PUTs to /_config/query_servers/<language>; CouchDB returns the
        previous setting, which is the empty string when there wasn't one.
        """
        return self.put(exec_string, '_config', 'query_servers', language)


class Database(CouchBase):
    """
    All the `CouchBase` methods plus some database-specific niceties.

    For example:

    >>> db = Database('dmedia', 'http://localhost:5984/')
    >>> db
    Database('dmedia', 'http://localhost:5984/')
    >>> db.basepath
    '/dmedia/'

    Niceties:

        * `Database.ensure()` - ensure the database exists
        * `Database.save(doc)` - save to CouchDB, update doc _id & _rev in place
        * `Database.save_many(docs)` - as above, but with a list of docs
        * `Database.get_many(doc_ids)` - retrieve many docs at once
        * `Database.view(design, view, **options)` - shortcut method
        * `Database.changes(**options)` - open a ``_changes`` feed
        * `Database.change_consumer(**options)` - managed ``_changes`` feed
    """
    def __init__(self, name, env=None, ctx=None):
        super().__init__(env, ctx)
        self.name = name
        self.basepath += (name + '/')

    def __repr__(self):
        return '{}({!r}, {!r})'.format(
            self.__class__.__name__, self.name, self.url
        )

    def server(self):
        """
        Create a `Server` with the same `Context` as this `Database`.
        """
        return Server(ctx=self.ctx)

    def database(self, name):
        """
        Create a `Database` with the same `Context` as this `Database`.
        """
        return Database(name, ctx=self.ctx)

    def ensure(self):
        """
        Ensure the database exists.

        This method will attempt to create the database, and will handle the
        `PreconditionFailed` exception raised if the database already exists.
        """
        try:
            self.put(None)
            return True
        except PreconditionFailed:
            return False

    def create(self):
        return self.put(None)

    def drop(self):
        return self.delete()

    def info(self):
        """
        Return the database info, raising `DatabaseNotFound` when missing.
        """
        return self.recv_json('GET', (), {}, error_map=db_errors)

    def save(self, doc, attachments=None):
        """
        POST doc to CouchDB, update doc _rev in place.

        For example:

        >>> db = Database('foo')
        >>> doc = {'_id': 'bar'}
        >>> db.save(doc)  #doctest: +SKIP
        {'rev': '1-967a00dff5e02add41819138abb3284d', 'ok': True, 'id': 'bar'}
        >>> doc  #doctest: +SKIP
        {'_rev': '1-967a00dff5e02add41819138abb3284d', '_id': 'bar'}

        If *doc* has no _id, one generated using `random_id()` is added to
        *doc* in-place prior to making the request to CouchDB.

        *attachments* is an optional ``dict`` mapping attachment names to
        `Attachment` namedtuples, which are sent inline in
        ``doc['_attachments']``.
        """
        if '_id' not in doc:
            doc['_id'] = random_id()
        if attachments:
            encoded = doc.setdefault('_attachments', {})
            for name in sorted(attachments):
                encoded[name] = encode_attachment(attachments[name])
        r = self.post(doc)
        doc['_rev'] = r['rev']
        return r

    def exists(self, _id):
        try:
            self.head(_id)
            return True
        except NotFound:
            return False

    def delete_doc(self, doc):
        """
        Delete *doc*, which must have both an _id and a _rev.
        """
        return self.delete(doc['_id'], rev=doc['_rev'])

    def copy(self, src_id, dst):
        """
        Copy the doc *src_id* to *dst*.

        *dst* can be a new doc ID, or an existing doc (with _id and _rev) that
        will be overwritten.  The copy is done client side as a GET then a PUT,
        so attachments are copied inline.
        """
        doc = self.get(src_id, attachments=True)
        dst = ({'_id': dst} if isinstance(dst, str) else dst)
        doc['_id'] = dst['_id']
        if '_rev' in dst:
            doc['_rev'] = dst['_rev']
        else:
            doc.pop('_rev', None)
        return self.put(doc, doc['_id'])

    def delete_att(self, doc, name):
        return self.delete(doc['_id'], name, rev=doc['_rev'])

    def save_many(self, docs):
        """
        Bulk-save using non-atomic semantics, updates all _rev in-place.

        If there are conflicts, a `BulkConflict` exception will be raised, whose
        ``conflicts`` attribute will be a list of the documents for which there
        were conflicts.

        However, all non-conflicting documents will have been saved and their
        _rev updated in-place.
        """
        for doc in filter(lambda d: '_id' not in d, docs):
            doc['_id'] = random_id()
        rows = self.post({'docs': docs}, '_bulk_docs')
        conflicts = []
        for (doc, row) in zip(docs, rows):
            assert doc['_id'] == row['id']
            if 'rev' in row:
                doc['_rev'] = row['rev']
            else:
                conflicts.append(doc)
        if conflicts:
            raise BulkConflict(conflicts, rows)
        return rows

    def delete_many(self, docs):
        for doc in docs:
            doc['_deleted'] = True
        return self.save_many(docs)

    def bulksave(self, docs):
        """
        Bulk-save using all-or-nothing semantics, updates all _rev in-place.
        """
        for doc in filter(lambda d: '_id' not in d, docs):
            doc['_id'] = random_id()
        rows = self.post({'docs': docs, 'all_or_nothing': True}, '_bulk_docs')
        for (doc, row) in zip(docs, rows):
            assert doc['_id'] == row['id']
            doc['_rev'] = row['rev']
        return rows

    def get_many(self, doc_ids):
        """
        Convenience method to retrieve multiple documents at once.

        Missing docs come back as ``None``.
        """
        result = self.post({'keys': doc_ids}, '_all_docs', include_docs=True)
        return [row.get('doc') for row in result['rows']]

    def view(self, design, view, **options):
        """
        Shortcut for making a GET request to a view.

        This:

            ``Database.view(design, view, **options)``

        Is just a shortcut for:

            ``Database.get('_design', design, '_view', view, **options)``

        When *keys* is given, the keys are POSTed instead.
        """
        options.setdefault('reduce', False)
        if 'keys' in options:
            obj = {'keys': options.pop('keys')}
            return self.post(obj, '_design', design, '_view', view, **options)
        else:
            return self.get('_design', design, '_view', view, **options)

    def all_docs(self, **options):
        if 'keys' in options:
            obj = {'keys': options.pop('keys')}
            return self.post(obj, '_all_docs', **options)
        return self.get('_all_docs', **options)

    def temp_view(self, compiled, **options):
        """
        Run an ad hoc view without saving it in a design doc.

        *compiled* is a ``(language, fns)`` pair as returned by
        `chenille.views.compile_fns()`.  Only use this during development.
        """
        (language, fns) = compiled
        obj = {'language': language}
        obj.update(fns)
        return self.post(obj, '_temp_view', **options)

    def save_design(self, fn_type, name, compiled):
        """
        Create or update the design doc *name* with compiled functions.

        *fn_type* is the design doc section, eg ``'views'`` or ``'filters'``.
        """
        (language, fns) = compiled
        _id = '_design/' + name
        try:
            doc = self.get(_id)
        except NotFound:
            doc = {'_id': _id}
        doc[fn_type] = fns
        doc['language'] = language
        self.save(doc)
        return doc

    def save_view(self, name, compiled):
        return self.save_design('views', name, compiled)

    def save_filter(self, name, compiled):
        return self.save_design('filters', name, compiled)

    def get_or_save_view(self, design, view, compiled, **options):
        """
        Query a view, saving its design doc first if the query fails.

        The design doc is only (re)saved when its views differ from the
        *compiled* views, otherwise the original error is re-raised.
        """
        try:
            return self.view(design, view, **options)
        except NotFound:
            _id = '_design/' + design
            try:
                doc = self.get(_id)
            except NotFound:
                doc = {'_id': _id}
            if doc.get('views') == compiled[1]:
                raise
        log.warning('saving changed design %r in %r', design, self)
        self.save_view(design, compiled)
        return self.view(design, view, **options)

    def changes(self, **options):
        """
        Open a ``_changes`` feed, returning a `chenille.changes.ChangeStream`.
        """
        from .changes import open_feed
        return open_feed(self, options)

    def change_consumer(self, **options):
        """
        Return a `chenille.changes.ChangeConsumer` for this database.
        """
        from .changes import ChangeConsumer
        return ChangeConsumer(self, **options)
