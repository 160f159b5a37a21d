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
Compile view, filter and validation functions for design documents.

Each view server language has a compiler, looked up by its language tag.  A
compiler's ``compile(options)`` returns a function that turns one of your
functions into the string stored in the design doc.  For example:

>>> (language, fns) = compile_fns('javascript', {
...     'by_type': {
...         'map': 'function(doc) { emit(doc.type, null); }',
...         'reduce': '_count',
...     },
... })
>>> language
'javascript'
>>> print(dumps(fns, pretty=True))
{
    "by_type": {
        "map": "function(doc) { emit(doc.type, null); }",
        "reduce": "_count"
    }
}

The built-in reducers like ``'_count'`` are always passed through untouched.
Languages without a registered compiler just use ``str()``.
"""

import inspect
import textwrap

from . import dumps


NATIVE_REDUCERS = frozenset([
    '_approx_count_distinct',
    '_count',
    '_stats',
    '_sum',
])


class Compiler:
    """
    Compiles functions for the view server *language* with ``str()``.
    """

    def __init__(self, language):
        self.language = language

    def __repr__(self):
        return '{}({!r})'.format(self.__class__.__name__, self.language)

    def compile(self, options):
        return str


class PythonCompiler(Compiler):
    """
    Compiles Python functions for a Python view server.

    A callable is replaced by its dedented source, anything else by ``str()``.
    """

    def compile(self, options):
        return self._transform

    @staticmethod
    def _transform(fn):
        if callable(fn):
            return textwrap.dedent(inspect.getsource(fn))
        return str(fn)


compilers = {
    'javascript': Compiler('javascript'),
    'python': PythonCompiler('python'),
}


def register_compiler(compiler):
    """
    Register *compiler* under its language, replacing any existing one.
    """
    if not callable(getattr(compiler, 'compile', None)):
        raise TypeError(
            'compiler needs a compile() method; got {!r}'.format(compiler)
        )
    compilers[compiler.language] = compiler
    return compiler


def get_compiler(language):
    """
    Return the compiler for *language*, or a ``str()`` compiler if unknown.

    >>> get_compiler('javascript')
    Compiler('javascript')
    >>> get_compiler('erlang')
    Compiler('erlang')

    """
    try:
        return compilers[language]
    except KeyError:
        return Compiler(language)


def language_options(options):
    """
    Split *options* into a ``(language, other_options)`` pair.

    *options* is either a language tag or a ``dict`` that may include a
    "language" key (default ``'javascript'``):

    >>> language_options('python')
    ('python', {})
    >>> language_options({'language': 'python', 'pretty': True})
    ('python', {'pretty': True})

    """
    if isinstance(options, str):
        return (options, {})
    other = dict(options)
    language = other.pop('language', 'javascript')
    return (language, other)


def map_leaves(func, obj):
    """
    Apply *func* to every non-``dict`` value in the nested ``dict`` *obj*.

    >>> map_leaves(len, {'a': 'xyz', 'b': {'c': 'hi'}})
    {'a': 3, 'b': {'c': 2}}

    """
    return dict(
        (key, map_leaves(func, value) if isinstance(value, dict) else func(value))
        for (key, value) in obj.items()
    )


def compile_fns(options, fns):
    """
    Compile the nested ``dict`` *fns*, returning a ``(language, fns)`` pair.

    The result is what `Database.save_view()`, `Database.save_filter()` and
    `Database.temp_view()` expect.
    """
    (language, other) = language_options(options)
    compiler = get_compiler(language)
    transform = compiler.compile(other)

    def compile_one(fn):
        if isinstance(fn, str) and fn in NATIVE_REDUCERS:
            return fn
        return transform(fn)

    return (compiler.language, map_leaves(compile_one, fns))
