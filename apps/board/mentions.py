# apps/board/mentions.py

"""
Menções em comentários (@usuario, @card, @board)

O texto é varrido por `@(\\w+)`; nomes de usuário são resolvidos sem
diferenciar maiúsculas. `@card` notifica os responsáveis do cartão e
`@board` os membros do projeto. O autor nunca é notificado.
"""

import re
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Set

MENTION_RE = re.compile(r'@(\w+)')

GROUP_CARD = 'card'
GROUP_BOARD = 'board'


def extract_mentions(text: str) -> List[str]:
    """Nomes citados no texto, sem repetição, na ordem em que aparecem"""
    seen = []
    for name in MENTION_RE.findall(text or ''):
        if name.lower() not in [s.lower() for s in seen]:
            seen.append(name)
    return seen


class UserDirectory(ABC):
    """Colaborador de identidade: nomes de usuário e membros de board"""

    @abstractmethod
    def resolve_usernames(self, names: Iterable[str]) -> Dict[str, str]:
        """{nome em minúsculas: user_id} para os nomes que existem"""

    @abstractmethod
    def board_members(self, board_id) -> Set[str]:
        pass

    @abstractmethod
    def existing(self, user_ids: Iterable[str]) -> Set[str]:
        """Subconjunto dos ids que correspondem a usuários ativos"""


class MemoryDirectory(UserDirectory):

    def __init__(self, users: Optional[Dict[str, str]] = None, members: Optional[Dict] = None):
        # users: {username: user_id}; members: {board_id: {user_id, ...}}
        self.users = {name.lower(): str(uid) for name, uid in (users or {}).items()}
        self.members = {str(b): {str(u) for u in ids} for b, ids in (members or {}).items()}

    def add_user(self, username, user_id, boards=()):
        self.users[username.lower()] = str(user_id)
        for board_id in boards:
            self.members.setdefault(str(board_id), set()).add(str(user_id))

    def resolve_usernames(self, names):
        return {n.lower(): self.users[n.lower()] for n in names if n.lower() in self.users}

    def board_members(self, board_id):
        return set(self.members.get(str(board_id), set()))

    def existing(self, user_ids):
        known = set(self.users.values())
        return {str(u) for u in user_ids if str(u) in known}


class OrmDirectory(UserDirectory):

    def resolve_usernames(self, names):
        from django.db.models import Q
        from apps.core.models import Usuario

        lowered = {n.lower() for n in names}
        if not lowered:
            return {}
        query = Q()
        for name in lowered:
            query |= Q(username__iexact=name)
        usuarios = Usuario.objects.filter(query, is_active=True).values_list('username', 'id')
        return {username.lower(): str(pk) for username, pk in usuarios}

    def board_members(self, board_id):
        from apps.core.models import Board

        board = Board.objects.select_related('projeto').filter(pk=int(board_id)).first()
        if board is None:
            return set()
        members = {str(pk) for pk in board.projeto.membros.values_list('id', flat=True)}
        members.add(str(board.projeto.criado_por_id))
        return members

    def existing(self, user_ids):
        from apps.core.models import Usuario

        pks = []
        for user_id in user_ids:
            try:
                pks.append(int(user_id))
            except (TypeError, ValueError):
                continue
        return {
            str(pk) for pk in
            Usuario.objects.filter(pk__in=pks, is_active=True).values_list('id', flat=True)
        }


def resolve_mentions(text: str, explicit=(), directory: UserDirectory = None, board_id=None,
                     card_assignees: Iterable[str] = (), author_id=None) -> List[str]:
    """
    Ids de usuário a notificar por um comentário

    `explicit` aceita ids ou dicts {'type': 'user'|'group', 'id': ...},
    no formato que o editor de comentários envia.
    """
    user_ids: List[str] = []
    groups: Set[str] = set()

    for mention in explicit or ():
        if isinstance(mention, dict):
            if mention.get('type') == 'group':
                groups.add(str(mention.get('id')).lower())
            elif mention.get('id') is not None:
                user_ids.append(str(mention['id']))
        else:
            user_ids.append(str(mention))

    names = []
    for name in extract_mentions(text):
        if name.lower() in (GROUP_CARD, GROUP_BOARD):
            groups.add(name.lower())
        else:
            names.append(name)

    if names and directory is not None:
        resolved = directory.resolve_usernames(names)
        user_ids.extend(resolved[n.lower()] for n in names if n.lower() in resolved)

    if GROUP_CARD in groups:
        user_ids.extend(str(u) for u in card_assignees)
    if GROUP_BOARD in groups and directory is not None and board_id is not None:
        user_ids.extend(sorted(directory.board_members(board_id)))

    author = None if author_id is None else str(author_id)
    known = directory.existing(user_ids) if directory is not None else set(user_ids)
    result = []
    for user_id in user_ids:
        if user_id in known and user_id != author and user_id not in result:
            result.append(user_id)
    return result
