# apps/core/signals.py

import logging

from django.db.models.signals import post_save
from django.dispatch import receiver

from apps.board.positions import PositionSpace

from .models import Board, Coluna

logger = logging.getLogger(__name__)

COLUNAS_PADRAO = ['Backlog', 'Em Progresso', 'Em Revisão', 'Concluído']


@receiver(post_save, sender=Board)
def criar_colunas_padrao(sender, instance, created, raw=False, **kwargs):
    """
    Cria colunas padrão quando um novo board é criado
    APENAS se não há colunas (fixtures carregadas com raw=True são ignoradas)
    """
    if not created or raw or instance.colunas.exists():
        return

    posicoes = PositionSpace().spread(len(COLUNAS_PADRAO))
    Coluna.objects.bulk_create([
        Coluna(titulo=titulo, board=instance, posicao=posicao)
        for titulo, posicao in zip(COLUNAS_PADRAO, posicoes)
    ])
    logger.info(f"📋 Colunas padrão criadas para o board {instance.pk}")
