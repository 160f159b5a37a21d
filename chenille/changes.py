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
Consume the CouchDB ``_changes`` feed.

There are three layers here:

    1. `ChangeStream` turns a ``degu`` response body into `ChangeEvent`
       namedtuples

    2. `open_feed()` makes the streaming "GET /db/_changes" request on its own
       dedicated connection, wrapped in an abortable `FeedConnection`

    3. `ChangeConsumer` runs a feed in a background thread and pushes each
       event to its subscribers


Feed types
----------

With ``feed='normal'`` or ``feed='longpoll'`` the response is a single JSON
object, something like this:

>>> body = b'{"results":[{"seq":1,"id":"a","changes":[{"rev":"1-x"}]}],"last_seq":1}'

`ChangeStream` parses the whole body, yields each row, and remembers the
final sequence:

>>> from io import BytesIO
>>> from degu.base import api
>>> stream = ChangeStream(api.Body(BytesIO(body), len(body)), continuous=False)
>>> list(stream)
[ChangeEvent(seq=1, id='a', revs=('1-x',), deleted=False, doc=None)]
>>> stream.last_seq
1

With ``feed='continuous'`` the response is one JSON object per line, with the
occasional blank line as a heartbeat.  The stream yields each event as soon as
its line arrives, which means it can go on forever.


Consumers
---------

A `ChangeConsumer` owns at most one open feed at a time:

>>> from chenille import Database
>>> db = Database('mydb')
>>> consumer = ChangeConsumer(db, include_docs=True)
>>> consumer.state
'init'
>>> consumer.subscribe(print)
>>> consumer.start()  #doctest: +SKIP
>>> consumer.stop()  #doctest: +SKIP
ChangeConsumer(Database('mydb', 'http://127.0.0.1:5984/'))

When started again, the consumer resumes from the last sequence it delivered.
"""

from collections import namedtuple
import json
import logging
import socket
import threading

from . import db_errors, check_response, _start_thread, ParseError, InvalidState


log = logging.getLogger()

INIT = 'init'
RUNNING = 'running'
STOPPED = 'stopped'

FEED_TYPES = ('normal', 'longpoll', 'continuous')
FEED_DEFAULTS = {
    'feed': 'continuous',
    'heartbeat': 30000,
}
FEED_KW = frozenset([
    'conflicts',
    'descending',
    'feed',
    'filter',
    'heartbeat',
    'include_docs',
    'limit',
    'since',
    'style',
    'timeout',
    'view',
])


ChangeEvent = namedtuple('ChangeEvent', 'seq id revs deleted doc')


def feed_options(options):
    """
    Return a validated copy of *options* with the defaults filled in.

    For example:

    >>> sorted(feed_options({'since': 7}).items())
    [('feed', 'continuous'), ('heartbeat', 30000), ('since', 7)]

    """
    if not FEED_KW.issuperset(options):
        unsupported = sorted(set(options) - FEED_KW)
        raise ValueError(
            'unsupported _changes options: {!r}'.format(unsupported)
        )
    kw = dict(FEED_DEFAULTS)
    kw.update(options)
    if kw['feed'] not in FEED_TYPES:
        raise ValueError(
            'feed must be one of {!r}; got {!r}'.format(FEED_TYPES, kw['feed'])
        )
    return kw


def build_event(row):
    """
    Build a `ChangeEvent` from one row of the ``_changes`` feed.

    >>> build_event({'seq': 3, 'id': 'b', 'changes': [{'rev': '2-y'}], 'deleted': True})
    ChangeEvent(seq=3, id='b', revs=('2-y',), deleted=True, doc=None)

    """
    try:
        return ChangeEvent(
            row['seq'],
            row['id'],
            tuple(c['rev'] for c in row['changes']),
            row.get('deleted', False),
            row.get('doc'),
        )
    except (KeyError, TypeError, AttributeError):
        raise ParseError('bad change row: {!r}'.format(row), row)


def iter_body(body):
    """
    Yield the data in *body* as it arrives from the server.
    """
    if body is None:
        return
    if body.chunked:
        for (extension, data) in body:
            if data:
                yield data
    else:
        yield from body


def iter_lines(chunks):
    """
    Re-split *chunks* of bytes on newlines.

    >>> list(iter_lines([b'{"a"', b':1}\\n\\n{"b":2}\\n']))
    [b'{"a":1}', b'', b'{"b":2}']

    Any trailing bytes not terminated by a newline are yielded last.
    """
    buf = b''
    for data in chunks:
        buf += data
        lines = buf.split(b'\n')
        buf = lines.pop()
        yield from lines
    if buf:
        yield buf


def loads_line(line):
    try:
        return json.loads(line.decode())
    except ValueError:
        raise ParseError('bad _changes line: {!r}'.format(line[:64]), line)


class FeedConnection:
    """
    Abortable handle on the dedicated connection behind a ``_changes`` feed.

    `FeedConnection.abort()` can be called from any thread.  It shuts down the
    socket so a read blocked in another thread returns promptly.  The
    underlying ``degu.client.Connection`` is closed exactly once.
    """

    __slots__ = ('conn', 'aborted', 'closed', '_lock')

    def __init__(self, conn):
        self.conn = conn
        self.aborted = False
        self.closed = False
        self._lock = threading.Lock()

    def __repr__(self):
        return '{}({!r})'.format(self.__class__.__name__, self.conn)

    def request(self, method, path, headers):
        return self.conn.request(method, path, headers, None)

    def abort(self):
        self.aborted = True
        self.close()

    def close(self):
        with self._lock:
            if self.closed:
                return False
            self.closed = True
        sock = getattr(self.conn, 'sock', None)
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # Already disconnected
        self.conn.close()
        return True


class ChangeStream:
    """
    Iterate through the `ChangeEvent` rows in a ``_changes`` response body.

    A stream can only be iterated once.  When iteration stops for any reason
    the *connection* (if any) is closed.
    """

    def __init__(self, body, continuous, connection=None):
        self.body = body
        self.continuous = continuous
        self.connection = connection
        self.last_seq = None
        self._started = False

    def __repr__(self):
        return '{}({!r}, continuous={!r})'.format(
            self.__class__.__name__, self.body, self.continuous
        )

    @property
    def aborted(self):
        return self.connection is not None and self.connection.aborted

    def __iter__(self):
        if self._started:
            raise ValueError('ChangeStream can only be iterated once')
        self._started = True
        try:
            if self.continuous:
                yield from self._iter_continuous()
            else:
                yield from self._iter_normal()
        except ParseError:
            if self.aborted:
                return
            raise
        except (ConnectionError, OSError, ValueError) as e:
            if self.aborted:
                log.debug('read ended by abort: %r', e)
                return
            raise
        finally:
            self.close()

    def _iter_normal(self):
        data = b''.join(iter_body(self.body))
        result = loads_line(data)
        if not (isinstance(result, dict) and isinstance(result.get('results'), list)):
            raise ParseError('bad _changes body: {!r}'.format(data[:64]), data)
        events = [build_event(row) for row in result['results']]
        self.last_seq = result.get('last_seq')
        yield from events

    def _iter_continuous(self):
        for line in iter_lines(iter_body(self.body)):
            line = line.strip()
            if not line:
                continue  # Heartbeat
            if self.aborted:
                return
            row = loads_line(line)
            if isinstance(row, dict) and 'last_seq' in row and 'seq' not in row:
                self.last_seq = row['last_seq']
                return
            yield build_event(row)

    def close(self):
        if self.connection is not None:
            return self.connection.close()
        return False

    def abort(self):
        if self.connection is not None:
            self.connection.abort()


def get_update_seq(db):
    """
    Return the current ``update_seq`` of *db*.

    Raises `DatabaseNotFound` if *db* doesn't exist.
    """
    return db.info()['update_seq']


def widen_timeout(conn, heartbeat):
    """
    Make sure the socket timeout is at least twice the *heartbeat* interval.
    """
    sock = getattr(conn, 'sock', None)
    if sock is None or not isinstance(heartbeat, int) or heartbeat <= 0:
        return
    current = sock.gettimeout()
    if current is None:
        return
    sock.settimeout(max(current, 2 * heartbeat / 1000))


def open_feed(db, options):
    """
    Open the ``_changes`` feed for *db*, returning a `ChangeStream`.

    When *options* has no "since", the feed starts at the current
    ``update_seq`` of *db*.  A missing database raises `DatabaseNotFound` now,
    rather than on the first read.
    """
    kw = feed_options(options)
    if kw.get('since') is None:
        kw['since'] = get_update_seq(db)
    (path, headers) = db.prepare(('_changes',), kw, {'accept': 'application/json'})
    connection = FeedConnection(db.connect())
    try:
        widen_timeout(connection.conn, kw.get('heartbeat'))
        response = connection.request('GET', path, headers)
        check_response(response, 'GET', path, db_errors)
    except BaseException:
        connection.close()
        raise
    continuous = (kw['feed'] == 'continuous')
    log.info('opened %s _changes feed since %r for %r', kw['feed'], kw['since'], db)
    return ChangeStream(response.body, continuous, connection)


class ChangeConsumer:
    """
    Run a ``_changes`` feed in a background thread.

    The *options* are validated once and never change; create a new consumer
    to use different options.

    Subscribers are called synchronously from the background thread, in the
    order they subscribed, and the next event isn't read until every
    subscriber has returned.  A slow subscriber therefore slows the feed.
    """

    def __init__(self, db, **options):
        self.db = db
        self.options = feed_options(options)
        self._lock = threading.Lock()
        self._state = INIT
        self._last_seq = None
        self._stream = None
        self._thread = None
        self._opening = None
        self._error = None
        self._subscribers = {}

    def __repr__(self):
        return '{}({!r})'.format(self.__class__.__name__, self.db)

    @property
    def state(self):
        return self._state

    @property
    def running(self):
        return self._state == RUNNING

    @property
    def last_seq(self):
        return self._last_seq

    @property
    def error(self):
        return self._error

    def subscribe(self, on_change, on_error=None):
        """
        Call ``on_change(event)`` for each `ChangeEvent`.

        If given, ``on_error(error)`` is called once when the feed fails.
        """
        if not callable(on_change):
            raise TypeError('on_change not callable: {!r}'.format(on_change))
        if not (on_error is None or callable(on_error)):
            raise TypeError('on_error not callable: {!r}'.format(on_error))
        with self._lock:
            self._subscribers[on_change] = on_error

    def unsubscribe(self, on_change):
        with self._lock:
            try:
                del self._subscribers[on_change]
                return True
            except KeyError:
                return False

    def open_feed(self, options):
        return open_feed(self.db, options)

    def start(self):
        """
        Open a feed and start delivering changes.

        After a `ChangeConsumer.stop()`, the feed resumes from the last
        sequence delivered.

        The feed is opened without holding the consumer lock, so a
        `ChangeConsumer.stop()` made while the request is in flight returns
        at once; the new stream is then closed rather than started.
        """
        with self._lock:
            if self._state == RUNNING or self._opening is not None:
                raise InvalidState('{!r} is already running'.format(self))
            options = dict(self.options)
            if self._last_seq is not None:
                options['since'] = self._last_seq
            opening = self._opening = object()
        try:
            stream = self.open_feed(options)
        except BaseException:
            with self._lock:
                if self._opening is opening:
                    self._opening = None
            raise
        with self._lock:
            cancelled = (self._opening is not opening)
            if not cancelled:
                self._opening = None
                self._stream = stream
                self._state = RUNNING
                self._error = None
                self._thread = _start_thread(self._run, stream)
        if cancelled:
            stream.close()
            log.info('%r stopped while opening feed', self)
            return self
        log.info('started %r', self)
        return self

    def stop(self):
        """
        Stop delivering changes and abort the feed connection.

        This doesn't wait for the background thread; see
        `ChangeConsumer.join()`.  Calling it more than once is harmless.
        """
        with self._lock:
            stream = self._stream
            self._stream = None
            self._opening = None
            self._state = STOPPED
        if stream is not None:
            stream.abort()
            log.info('stopped %r at %r', self, self._last_seq)
        return self

    def join(self, timeout=None):
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True

    def _owns(self, stream):
        return self._stream is stream

    def _get_subscribers(self):
        with self._lock:
            return list(self._subscribers.items())

    def _run(self, stream):
        try:
            for event in stream:
                with self._lock:
                    if not self._owns(stream):
                        break
                for (on_change, on_error) in self._get_subscribers():
                    on_change(event)
                with self._lock:
                    if self._owns(stream):
                        self._last_seq = event.seq
        except Exception as e:
            self._fail(stream, e)
        else:
            with self._lock:
                if not self._owns(stream):
                    return
                if stream.last_seq is not None:
                    self._last_seq = stream.last_seq
                self._stream = None
                self._state = STOPPED
            log.info('%r reached end of feed at %r', self, self._last_seq)
        finally:
            stream.close()

    def _fail(self, stream, error):
        with self._lock:
            if not self._owns(stream):
                log.debug('%r ignoring error after stop: %r', self, error)
                return
            self._stream = None
            self._state = STOPPED
            self._error = error
        log.exception('%r failed', self)
        for (on_change, on_error) in self._get_subscribers():
            if on_error is not None:
                try:
                    on_error(error)
                except Exception:
                    log.exception('%r on_error %r failed', self, on_error)
