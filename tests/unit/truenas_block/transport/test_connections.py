#!/usr/bin/env python3
"""
Unit tests for the connection cache.
"""

import os
import sys
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../../../')))

from truenas_block.transport.connections import ConnectionCache, ConnectionKey

KEY = ConnectionKey('10.0.0.5', 443, 'wss')


class TestConnectionCache(unittest.TestCase):
    """Test cases for ConnectionCache."""

    def setUp(self):
        self.now = 0.0
        self.created = []
        self.cache = ConnectionCache(self._factory, max_age=100, clock=lambda: self.now)

    def _factory(self, key):
        conn = MagicMock(name=f"conn{len(self.created)}")
        conn.is_alive.return_value = True
        self.created.append(conn)
        return conn

    def test_key_renders_as_url(self):
        self.assertEqual(str(KEY), 'wss://10.0.0.5:443')

    def test_live_connection_is_reused(self):
        first = self.cache.get(KEY)
        self.now = 99
        self.assertIs(self.cache.get(KEY), first)
        self.assertEqual(self.cache.opened, 1)
        self.assertEqual(len(self.cache), 1)

    def test_keys_are_independent(self):
        ws = self.cache.get(KEY)
        rest = self.cache.get(ConnectionKey('10.0.0.5', 443, 'https'))
        self.assertIsNot(ws, rest)
        self.assertEqual(len(self.cache), 2)

    def test_stale_connection_is_replaced(self):
        first = self.cache.get(KEY)
        self.now = 100
        second = self.cache.get(KEY)
        self.assertIsNot(second, first)
        first.close.assert_called_once()
        self.assertEqual(self.cache.opened, 2)

    def test_dead_connection_is_replaced(self):
        first = self.cache.get(KEY)
        first.is_alive.return_value = False
        second = self.cache.get(KEY)
        self.assertIsNot(second, first)
        first.close.assert_called_once()

    def test_invalidate_closes(self):
        first = self.cache.get(KEY)
        self.cache.invalidate(KEY)
        self.cache.invalidate(KEY)
        first.close.assert_called_once()
        self.assertEqual(len(self.cache), 0)

    def test_close_errors_are_ignored(self):
        first = self.cache.get(KEY)
        first.close.side_effect = OSError("already closed")
        self.cache.invalidate(KEY)
        self.assertEqual(len(self.cache), 0)

    def test_racing_open_keeps_one_connection(self):
        """If another caller stores a connection while we open ours, ours is closed."""
        winner = MagicMock(name='winner')

        def factory(key):
            self.cache._entries[key] = (winner, self.now)
            return self._factory(key)

        self.cache._factory = factory
        self.assertIs(self.cache.get(KEY), winner)
        self.created[0].close.assert_called_once()

    def test_context_manager_closes_all(self):
        with self.cache as cache:
            conns = [cache.get(KEY), cache.get(ConnectionKey('10.0.0.5', 443, 'https'))]
        for conn in conns:
            conn.close.assert_called_once()
        self.assertEqual(len(self.cache), 0)


if __name__ == '__main__':
    unittest.main()
