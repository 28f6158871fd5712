"""BranchManager — the fork tree of conversation branches per chat."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discovery.config import settings
from discovery.errors import (
    ConflictError,
    CycleDetected,
    DuplicateName,
    InvalidParent,
    NotFoundError,
    ValidationError,
)
from discovery.store.models import Branch, Chat, Message, make_id

if TYPE_CHECKING:
    from discovery.store.store import DiscoveryStore

logger = logging.getLogger(__name__)

ROOT_BRANCH_NAME = "main"
MAX_BRANCH_NAME_LENGTH = 80


class BranchManager:
    """Creates branches, appends messages and resolves logical history.

    Branches are stored as flat rows that only hold a ``parent_message_id``.
    A branch can only point at an already-finalised message of its own chat,
    so the ancestor walk terminates; ``max_depth`` bounds it anyway.

    Args:
        store: Backing DiscoveryStore.
        max_depth: Longest ancestor chain ``resolve_history`` will walk.
    """

    def __init__(self, store: DiscoveryStore, max_depth: int | None = None) -> None:
        self._store = store
        self._max_depth = max_depth or settings.max_branch_depth
        # branch_id -> resolved messages up to and including its fork point
        self._prefix_cache: dict[str, list[Message]] = {}

    # -- Chats -----------------------------------------------------------------

    async def create_chat(self, owner_id: str) -> tuple[Chat, Branch]:
        """Create a chat together with its root branch."""
        chat = await self._store.add_chat(Chat(id=make_id(), owner_id=owner_id))
        root = await self._store.add_branch(
            Branch(id=make_id(), chat_id=chat.id, parent_message_id=None, name=ROOT_BRANCH_NAME)
        )
        logger.info("Created chat %s (owner=%s) with root branch %s", chat.id, owner_id, root.id)
        return chat, root

    async def get_chat(self, chat_id: str) -> Chat:
        chat = await self._store.get_chat(chat_id)
        if chat is None:
            msg = f"Chat not found: {chat_id}"
            raise NotFoundError(msg)
        return chat

    # -- Branches --------------------------------------------------------------

    async def get_branch(self, branch_id: str) -> Branch:
        branch = await self._store.get_branch(branch_id)
        if branch is None:
            msg = f"Branch not found: {branch_id}"
            raise NotFoundError(msg)
        return branch

    async def list_branches(self, chat_id: str) -> list[Branch]:
        """Return a chat's branches ordered by creation time."""
        await self.get_chat(chat_id)
        return await self._store.list_branches(chat_id)

    async def create_branch(
        self, chat_id: str, parent_message_id: str | None, name: str
    ) -> Branch:
        """Fork a new branch from ``parent_message_id``.

        Raises:
            NotFoundError: The chat does not exist.
            InvalidParent: The fork point is not a finalised message of this chat.
            DuplicateName: Another branch of the chat has the same name (any case).
        """
        name = (name or "").strip()
        if not name:
            msg = "Branch name must not be empty"
            raise ValidationError(msg)
        if len(name) > MAX_BRANCH_NAME_LENGTH:
            msg = f"Branch name is longer than {MAX_BRANCH_NAME_LENGTH} characters"
            raise ValidationError(msg)

        await self.get_chat(chat_id)
        parent = None
        if parent_message_id is not None:
            parent = await self._check_parent(chat_id, parent_message_id)

        # A lost race against the unique index is retried once; the retry sees
        # the winner and reports it as a duplicate.
        for attempt in range(2):
            existing = await self._store.list_branches(chat_id)
            if any(b.name_key == name.casefold() for b in existing):
                msg = f"A branch named '{name}' already exists in this chat"
                raise DuplicateName(msg)
            branch = Branch(
                id=make_id(),
                chat_id=chat_id,
                parent_message_id=parent_message_id,
                name=name,
                parent_branch_id=parent.branch_id if parent else None,
                fork_ordinal=parent.ordinal if parent else None,
            )
            try:
                await self._store.add_branch(branch)
            except ConflictError:
                logger.warning(
                    "Branch create raced on name '%s' in chat %s (attempt %d)",
                    name,
                    chat_id,
                    attempt + 1,
                )
                continue
            logger.info(
                "Created branch '%s' (%s) in chat %s from message %s",
                name,
                branch.id,
                chat_id,
                parent_message_id,
            )
            return branch

        msg = f"A branch named '{name}' already exists in this chat"
        raise DuplicateName(msg)

    async def _check_parent(self, chat_id: str, parent_message_id: str) -> Message:
        parent = await self._store.get_message(parent_message_id)
        if parent is None or not parent.finalized:
            msg = f"Fork point {parent_message_id} is not a message in this chat"
            raise InvalidParent(msg)
        parent_branch = await self._store.get_branch(parent.branch_id)
        if parent_branch is None or parent_branch.chat_id != chat_id:
            msg = f"Fork point {parent_message_id} is not a message in this chat"
            raise InvalidParent(msg)
        return parent

    # -- History ---------------------------------------------------------------

    async def resolve_history(self, branch_id: str) -> list[Message]:
        """Return the full logical history from chat root to branch head.

        Ancestor messages are shared by reference: the same rows the parent
        branch returns, cut at the fork point.
        """
        branch = await self.get_branch(branch_id)
        prefix, fork_ordinal = await self._prefix(branch)
        own = await self._store.list_messages(branch.id, after_ordinal=fork_ordinal)
        return [*prefix, *own]

    async def _prefix(self, branch: Branch) -> tuple[list[Message], int | None]:
        """Resolved messages a branch inherits, and the fork point's ordinal."""
        if branch.parent_message_id is None:
            return [], None

        cached = self._prefix_cache.get(branch.id)
        if cached is not None:
            return cached, cached[-1].ordinal

        # Walk up to the root, collecting (ancestor branch, cut ordinal).
        chain: list[tuple[Branch, int]] = []
        current = branch
        seen = {branch.id}
        while current.parent_message_id is not None:
            if len(chain) >= self._max_depth:
                msg = f"Branch {branch.id} exceeds the maximum depth of {self._max_depth}"
                raise CycleDetected(msg)
            fork = await self._store.get_message(current.parent_message_id)
            if fork is None:
                msg = f"Fork point {current.parent_message_id} of branch {current.id} is missing"
                raise NotFoundError(msg)
            parent = await self.get_branch(fork.branch_id)
            if parent.id in seen:
                msg = f"Branch {branch.id} is its own ancestor"
                raise CycleDetected(msg)
            seen.add(parent.id)
            chain.append((parent, fork.ordinal))
            current = parent

        messages: list[Message] = []
        lower: int | None = None
        for ancestor, cut in reversed(chain):
            messages.extend(
                await self._store.list_messages(
                    ancestor.id, after_ordinal=lower, through_ordinal=cut
                )
            )
            lower = cut

        if messages:
            self._prefix_cache[branch.id] = messages
        return messages, chain[0][1]

    # -- Appends ---------------------------------------------------------------

    async def append_message(
        self,
        branch_id: str,
        role: str,
        content: str,
        *,
        finalized: bool = True,
        degraded: bool = False,
    ) -> Message:
        """Append a message at the branch head under its single-writer lock."""
        branch = await self.get_branch(branch_id)
        async with self._store.writer(branch_id):
            for attempt in range(2):
                message = Message(
                    id=make_id(),
                    branch_id=branch_id,
                    role=role,
                    content=content,
                    ordinal=await self.next_ordinal(branch),
                    finalized=finalized,
                    degraded=degraded,
                )
                try:
                    return await self._store.add_message(message)
                except ConflictError:
                    if attempt:
                        raise
                    logger.warning(
                        "Ordinal %d raced in branch %s, retrying", message.ordinal, branch_id
                    )
        msg = f"Could not append to branch {branch_id}"
        raise ConflictError(msg)

    async def next_ordinal(self, branch: Branch) -> int:
        """Next free ordinal at the head of ``branch``.

        Callers must hold the branch's writer lock. Forking freezes the shared
        prefix, so the ordinal must land after every fork point taken from it.
        """
        head = await self._store.max_ordinal(branch.id)
        if head is None:
            _, fork_ordinal = await self._prefix(branch)
            head = fork_ordinal if fork_ordinal is not None else -1
        ordinal = head + 1
        forks = await self._store.list_forks_of_branch(branch.id)
        if forks and ordinal <= max(cut for _, cut in forks):
            msg = f"Ordinal {ordinal} would precede a fork point in branch {branch.id}"
            raise ConflictError(msg)
        return ordinal
