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
Unit tests for the `chenille.views` module.
"""

from unittest import TestCase

from chenille import views


def map_type(doc):
    if 'type' in doc:
        yield (doc['type'], None)


MAP_TYPE_SOURCE = """def map_type(doc):
    if 'type' in doc:
        yield (doc['type'], None)
"""


class UpperCompiler(views.Compiler):
    def compile(self, options):
        suffix = options.get('suffix', '')
        return lambda fn: fn.upper() + suffix


class TestCompiler(TestCase):
    def test_init(self):
        inst = views.Compiler('javascript')
        self.assertEqual(inst.language, 'javascript')
        self.assertEqual(repr(inst), "Compiler('javascript')")
        self.assertIs(inst.compile({}), str)

    def test_PythonCompiler(self):
        inst = views.PythonCompiler('python')
        self.assertEqual(repr(inst), "PythonCompiler('python')")
        transform = inst.compile({})
        self.assertEqual(transform(map_type), MAP_TYPE_SOURCE)
        self.assertEqual(transform('def fn(doc): pass'), 'def fn(doc): pass')

        def by_owner(doc):
            yield (doc['owner'], 1)

        self.assertEqual(transform(by_owner),
            "def by_owner(doc):\n    yield (doc['owner'], 1)\n"
        )


class TestFunctions(TestCase):
    def setUp(self):
        self.saved = dict(views.compilers)

    def tearDown(self):
        views.compilers.clear()
        views.compilers.update(self.saved)

    def test_NATIVE_REDUCERS(self):
        self.assertIsInstance(views.NATIVE_REDUCERS, frozenset)
        self.assertEqual(views.NATIVE_REDUCERS,
            {'_count', '_sum', '_stats', '_approx_count_distinct'}
        )

    def test_compilers(self):
        self.assertEqual(set(views.compilers), {'javascript', 'python'})
        self.assertIs(type(views.compilers['javascript']), views.Compiler)
        self.assertIsInstance(views.compilers['python'], views.PythonCompiler)

    def test_register_compiler(self):
        inst = UpperCompiler('shout')
        self.assertIs(views.register_compiler(inst), inst)
        self.assertIs(views.compilers['shout'], inst)
        self.assertIs(views.get_compiler('shout'), inst)

        # Replaces an existing compiler:
        js = UpperCompiler('javascript')
        views.register_compiler(js)
        self.assertIs(views.get_compiler('javascript'), js)

        with self.assertRaises(TypeError) as cm:
            views.register_compiler('coffee')
        self.assertEqual(str(cm.exception),
            "compiler needs a compile() method; got 'coffee'"
        )

    def test_get_compiler(self):
        self.assertIs(views.get_compiler('javascript'), views.compilers['javascript'])
        self.assertIs(views.get_compiler('python'), views.compilers['python'])
        inst = views.get_compiler('erlang')
        self.assertIs(type(inst), views.Compiler)
        self.assertEqual(inst.language, 'erlang')
        self.assertNotIn('erlang', views.compilers)

    def test_language_options(self):
        f = views.language_options
        self.assertEqual(f('javascript'), ('javascript', {}))
        self.assertEqual(f({}), ('javascript', {}))
        options = {'language': 'python', 'strict': True}
        self.assertEqual(f(options), ('python', {'strict': True}))
        self.assertEqual(options, {'language': 'python', 'strict': True})

    def test_map_leaves(self):
        self.assertEqual(views.map_leaves(str, {}), {})
        self.assertEqual(
            views.map_leaves(lambda v: v * 2, {'a': 1, 'b': {'c': 2, 'd': {'e': 3}}}),
            {'a': 2, 'b': {'c': 4, 'd': {'e': 6}}}
        )

    def test_compile_fns(self):
        fns = {
            'by_type': {'map': map_type, 'reduce': '_count'},
            'stats': {'map': 'def fn(doc): pass', 'reduce': '_stats'},
        }
        self.assertEqual(views.compile_fns('python', fns), (
            'python',
            {
                'by_type': {'map': MAP_TYPE_SOURCE, 'reduce': '_count'},
                'stats': {'map': 'def fn(doc): pass', 'reduce': '_stats'},
            },
        ))

        # Default language:
        self.assertEqual(
            views.compile_fns({}, {'mine': 'function(doc, req) { return true; }'}),
            ('javascript', {'mine': 'function(doc, req) { return true; }'})
        )

        # Options reach the compiler, native reducers are untouched:
        views.register_compiler(UpperCompiler('shout'))
        self.assertEqual(
            views.compile_fns({'language': 'shout', 'suffix': '!'},
                {'v': {'map': 'emit', 'reduce': '_sum'}}
            ),
            ('shout', {'v': {'map': 'EMIT!', 'reduce': '_sum'}})
        )
        self.assertEqual(
            views.compile_fns('shout', {'v': {'map': '_count', 'reduce': '_custom'}}),
            ('shout', {'v': {'map': '_count', 'reduce': '_CUSTOM'}})
        )

        # Unknown language falls back to str():
        self.assertEqual(
            views.compile_fns('erlang', {'v': {'map': 17}}),
            ('erlang', {'v': {'map': '17'}})
        )
