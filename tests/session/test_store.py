from unittest import TestCase

from streamrelay.models import StreamSource
from streamrelay.session.store import MemorySessionStore
from streamrelay.session.stream import StreamSession


class MemorySessionStoreTestCase(TestCase):
    def setUp(self) -> None:
        self.store = MemorySessionStore()
        self.source = StreamSource(url="http://example.com/live.ts")

    def test_add_get_remove(self) -> None:
        session = StreamSession("relay_a", self.source, now=0.)
        self.assertIsNone(self.store.get("relay_a"))
        self.assertEqual(0, len(self.store))
        self.store.add(session)
        self.assertIs(session, self.store.get("relay_a"))
        self.assertIs(session, self.store.find_by_source(self.source.source_key))
        self.assertIn("relay_a", self.store)
        self.assertNotIn("relay_b", self.store)
        self.assertEqual(1, len(self.store))
        self.assertListEqual([session], self.store.all())
        self.assertListEqual([session], list(self.store))

        self.assertIs(session, self.store.remove("relay_a"))
        self.assertIsNone(self.store.remove("relay_a"))
        self.assertIsNone(self.store.get("relay_a"))
        self.assertIsNone(self.store.find_by_source(self.source.source_key))
        self.assertEqual(0, len(self.store))

    def test_remove_keeps_newer_source_entry(self) -> None:
        old = StreamSession("relay_old", self.source, now=0.)
        new = StreamSession("relay_new", self.source, now=1.)
        self.store.add(old)
        self.store.add(new)
        self.assertIs(new, self.store.find_by_source(self.source.source_key))
        self.store.remove("relay_old")
        self.assertIs(new, self.store.find_by_source(self.source.source_key))

    def test_find_by_source_unknown(self) -> None:
        self.assertIsNone(self.store.find_by_source("manual:nope"))

    def test_all_is_a_copy(self) -> None:
        self.store.add(StreamSession("relay_a", self.source, now=0.))
        sessions = self.store.all()
        self.store.remove("relay_a")
        self.assertEqual(1, len(sessions))
