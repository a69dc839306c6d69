"""
Annotation subscriptions
Tracks which URIs and authors are visible, keeps one relay subscription covering
them, and publishes notes and profiles
"""

import json
import logging
import re
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from config import config
from errors import PublishError
from local_store import LocalCache
from models import IDENTITY_TAGS, Note, Profile
from note_signer import NoteSigner
from relay_pool import RelayPool, Subscription
from uri import kind_from_uri

logger = logging.getLogger(__name__)


PROFILE_KIND = 0
RESERVED_TAGS = ("I", "i", "k")

HASHTAG_RE = re.compile(
    r"#(?:\[(?P<bracket_key>\w+):(?P<bracket_value>[^\]]*)\]"
    r"|(?P<key>\w+):(?P<value>[^\s#]+)"
    r"|(?P<word>\w+))"
)


def extract_hashtags(text: str) -> Tuple[List[List[str]], str]:
    """
    Split note text into tags and the remaining description

    `#word` -> ["t", word], `#key:value` -> [key, value] and
    `#[key:value with spaces]` -> [key, value].
    """
    tags = []
    for match in HASHTAG_RE.finditer(text):
        if match.group("bracket_key"):
            tags.append([match.group("bracket_key"), match.group("bracket_value")])
        elif match.group("key"):
            tags.append([match.group("key"), match.group("value")])
        else:
            tags.append(["t", match.group("word")])

    clean = " ".join(HASHTAG_RE.sub(" ", text).split())
    return tags, clean


def merge_tags(previous_tags: Iterable[List[str]], new_tags: List[List[str]]) -> List[List[str]]:
    """Previous tags not superseded by a new tag kind, then the new tags"""
    replaced = set(IDENTITY_TAGS) | {tag[0] for tag in new_tags if tag}
    kept = [list(tag) for tag in previous_tags if tag and tag[0] not in replaced]
    return kept + [list(tag) for tag in new_tags]


class AnnotationStore:
    """
    Single-writer annotation state

    Tracked URI and author sets only grow. Readers get frozen or copied
    snapshots.
    """

    def __init__(self):
        self._uris: Set[str] = set()
        self._authors: Set[str] = set()
        self._notes_by_uri: Dict[str, List[Note]] = {}
        self._notes_by_id: Dict[str, Note] = {}
        self._latest_notes: List[Note] = []
        self._profiles: Dict[str, Profile] = {}

    @property
    def uris(self) -> frozenset:
        return frozenset(self._uris)

    @property
    def authors(self) -> frozenset:
        return frozenset(self._authors)

    def add_uris(self, uris: Iterable[str]) -> List[str]:
        """Track URIs; returns the ones that were new"""
        new = sorted({uri.lower() for uri in uris} - self._uris)
        self._uris.update(new)
        return new

    def add_authors(self, pubkeys: Iterable[str]) -> List[str]:
        new = sorted(set(pubkeys) - self._authors)
        self._authors.update(new)
        return new

    def add_note(self, note: Note) -> bool:
        """Insert a note newest first; duplicates by id are ignored"""
        uri = note.uri
        if uri is None or note.id in self._notes_by_id:
            return False
        self._notes_by_id[note.id] = note
        for notes in (self._notes_by_uri.setdefault(uri, []), self._latest_notes):
            notes.append(note)
            notes.sort(key=lambda n: n.created_at, reverse=True)
        return True

    def remove_note(self, note_id: str) -> None:
        note = self._notes_by_id.pop(note_id, None)
        if note is None:
            return
        self._notes_by_uri[note.uri] = [n for n in self._notes_by_uri.get(note.uri, []) if n.id != note_id]
        self._latest_notes = [n for n in self._latest_notes if n.id != note_id]

    def notes(self, uri: str) -> List[Note]:
        return list(self._notes_by_uri.get(uri.lower(), []))

    def latest(self, uri: str) -> Optional[Note]:
        notes = self._notes_by_uri.get(uri.lower())
        return notes[0] if notes else None

    def latest_notes(self, limit: Optional[int] = None) -> List[Note]:
        return list(self._latest_notes[:limit])

    def set_profile(self, profile: Profile) -> bool:
        current = self._profiles.get(profile.pubkey)
        if current is not None and current.created_at > profile.created_at:
            return False
        self._profiles[profile.pubkey] = profile
        return True

    def profile(self, pubkey: str) -> Optional[Profile]:
        return self._profiles.get(pubkey)


class AnnotationSubscriptionManager:
    """Relay subscriptions and note publishing over one AnnotationStore"""

    def __init__(
        self,
        pool: Optional[RelayPool] = None,
        local_cache: Optional[LocalCache] = None,
        signer_factory: Callable[[], NoteSigner] = NoteSigner.load_or_create,
        note_kind: Optional[int] = None,
        store: Optional[AnnotationStore] = None,
    ):
        self.pool = pool or RelayPool()
        self.local_cache = local_cache
        self.signer_factory = signer_factory
        self.note_kind = note_kind or config.NOTE_KIND
        self.store = store or AnnotationStore()
        self.signer: Optional[NoteSigner] = None
        self._notes_subscription: Optional[Subscription] = None
        self._profiles_subscription: Optional[Subscription] = None
        self._latest_subscription: Optional[Subscription] = None

    # ==================== SUBSCRIPTIONS ====================

    async def track_uris(self, uris: Iterable[str]) -> bool:
        """
        Track more URIs; True when a new subscription was opened

        A call that adds nothing is a no-op. Otherwise the previous handle is
        closed and one subscription covering every tracked URI replaces it.
        """
        new_uris = self.store.add_uris(uris)
        if not new_uris:
            return False

        if self.local_cache is not None:
            for event in self.local_cache.get_nostr_events_by_uris(new_uris):
                self.store.add_note(Note.from_event(event))

        if self._notes_subscription is not None:
            await self._notes_subscription.close()
        tracked = sorted(self.store.uris)
        self._notes_subscription = await self.pool.subscribe_many(
            [{"kinds": [self.note_kind], "#I": tracked}], self._on_note_event
        )
        logger.info(f"Subscribed to notes for {len(tracked)} URIs")
        return True

    def _on_note_event(self, event: Dict[str, Any]) -> None:
        note = Note.from_event(event)
        if note.uri is None:
            return
        if self.store.add_note(note) and self.local_cache is not None:
            self.local_cache.add_nostr_event(note.uri, event)

    async def track_authors(self, pubkeys: Iterable[str]) -> bool:
        new_authors = self.store.add_authors(pubkeys)
        if not new_authors:
            return False

        if self._profiles_subscription is not None:
            await self._profiles_subscription.close()
        authors = sorted(self.store.authors)
        self._profiles_subscription = await self.pool.subscribe_many(
            [
                {"kinds": [PROFILE_KIND], "authors": authors, "limit": 1},
                {"kinds": [PROFILE_KIND], "authors": authors, "since": int(time.time())},
            ],
            self._on_profile_event,
        )
        logger.info(f"Subscribed to profiles for {len(authors)} authors")
        return True

    def _on_profile_event(self, event: Dict[str, Any]) -> None:
        try:
            content = json.loads(event.get("content") or "{}")
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid profile content from {event.get('pubkey')}: {e}")
            return
        self.store.set_profile(
            Profile(
                pubkey=event["pubkey"],
                name=content.get("name"),
                about=content.get("about"),
                picture=content.get("picture"),
                website=content.get("website"),
                created_at=int(event.get("created_at", 0)),
            )
        )

    async def subscribe_latest_notes(self, kinds: List[str], limit: Optional[int] = None) -> Subscription:
        """Recent notes about any entity of the given kinds ("ethereum:tx", ...)"""
        if self._latest_subscription is not None:
            await self._latest_subscription.close()
        note_filter: Dict[str, Any] = {"kinds": [self.note_kind], "#k": list(kinds)}
        if limit:
            note_filter["limit"] = limit
        self._latest_subscription = await self.pool.subscribe_many([note_filter], self._on_latest_event)
        return self._latest_subscription

    def _on_latest_event(self, event: Dict[str, Any]) -> None:
        self.store.add_note(Note.from_event(event))

    # ==================== READS ====================

    def get_latest(self, uri: str) -> Optional[Note]:
        return self.store.latest(uri)

    def get_notes(self, uri: str) -> List[Note]:
        return self.store.notes(uri)

    def get_profile(self, pubkey: str) -> Optional[Profile]:
        return self.store.profile(pubkey)

    # ==================== PUBLISH ====================

    def _get_signer(self) -> NoteSigner:
        if self.signer is None:
            self.signer = self.signer_factory()
        return self.signer

    async def publish(self, uri: str, content: str, tags: Optional[List[List[str]]] = None) -> Note:
        """
        Sign and broadcast a note about uri

        The note is applied locally before relays confirm it and withdrawn
        from the in-memory state if every relay rejects it.
        """
        signer = self._get_signer()
        uri = uri.lower()
        note_tags = [["I", uri], ["k", kind_from_uri(uri)]]
        note_tags += [list(tag) for tag in tags or [] if tag and tag[0] not in RESERVED_TAGS]

        event = signer.sign(self.note_kind, content, note_tags)
        note = Note.from_event(event)
        self.store.add_note(note)
        if self.local_cache is not None:
            self.local_cache.add_nostr_event(uri, event)

        try:
            relay = await self.pool.publish(event)
        except PublishError:
            self.store.remove_note(note.id)
            raise
        logger.info(f"Published note {note.id} for {uri} via {relay}")
        return note

    async def publish_note_from_text(self, uri: str, text: str) -> Note:
        """Hashtags become tags, merged over the latest note's tags"""
        new_tags, description = extract_hashtags(text)
        return await self.update_metadata(uri, description, new_tags)

    async def update_metadata(self, uri: str, content: str, tags: List[List[str]]) -> Note:
        latest = self.get_latest(uri)
        merged = merge_tags(latest.tags if latest else [], tags)
        return await self.publish(uri, content, merged)

    async def update_profile(
        self,
        name: Optional[str] = None,
        about: Optional[str] = None,
        picture: Optional[str] = None,
        website: Optional[str] = None,
    ) -> Profile:
        signer = self._get_signer()
        profile = Profile(pubkey=signer.pubkey, name=name, about=about, picture=picture, website=website)
        event = signer.sign(PROFILE_KIND, json.dumps(profile.to_content()), [])
        profile.created_at = int(event.get("created_at", time.time()))
        self.store.set_profile(profile)
        await self.pool.publish(event)
        return profile

    async def close(self) -> None:
        for subscription in (self._notes_subscription, self._profiles_subscription, self._latest_subscription):
            if subscription is not None:
                await subscription.close()
        self._notes_subscription = self._profiles_subscription = self._latest_subscription = None
