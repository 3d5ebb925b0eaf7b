# apps/core/models.py

from datetime import timedelta

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.db import models
from django.utils import timezone

POSICAO_MAX_DIGITOS = 30
POSICAO_CASAS_DECIMAIS = 10


class Usuario(AbstractUser):
    """Modelo de usuário customizado com tipo de acesso"""

    TIPO_CHOICES = [
        ('admin', 'Administrador'),
        ('gerente', 'Gerente'),
        ('funcionario', 'Funcionário'),
    ]

    tipo = models.CharField(max_length=20, choices=TIPO_CHOICES, default='funcionario')

    criado_em = models.DateTimeField(auto_now_add=True)
    atualizado_em = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'usuario'

    def __str__(self):
        return self.get_full_name() or self.username


class Projeto(models.Model):
    """Modelo de Projeto - agregador de boards"""

    nome = models.CharField(max_length=200)
    descricao = models.TextField(blank=True)
    criado_por = models.ForeignKey(
        Usuario,
        on_delete=models.PROTECT,
        related_name='projetos_criados'
    )
    membros = models.ManyToManyField(
        Usuario,
        related_name='projetos_membro'
    )
    ativo = models.BooleanField(default=True)
    criado_em = models.DateTimeField(auto_now_add=True)
    atualizado_em = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'projeto'
        ordering = ['-criado_em']

    def __str__(self):
        return self.nome


class Board(models.Model):
    """
    Quadro Kanban do projeto

    `versao` é a versão otimista da ordem das colunas; `ultima_sequencia`
    é o último número de sequência do registro de mudanças do board.
    """

    titulo = models.CharField(max_length=200)
    projeto = models.ForeignKey(
        Projeto,
        on_delete=models.CASCADE,
        related_name='boards'
    )
    descricao = models.TextField(blank=True)
    versao = models.PositiveIntegerField(default=0)
    ultima_sequencia = models.PositiveBigIntegerField(default=0)
    ativo = models.BooleanField(default=True)
    criado_em = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'board'
        ordering = ['titulo']

    def __str__(self):
        return f"{self.titulo} ({self.projeto.nome})"


class Coluna(models.Model):
    """Coluna do board Kanban"""

    titulo = models.CharField(max_length=100)
    board = models.ForeignKey(
        Board,
        on_delete=models.CASCADE,
        related_name='colunas'
    )
    posicao = models.DecimalField(
        max_digits=POSICAO_MAX_DIGITOS,
        decimal_places=POSICAO_CASAS_DECIMAIS
    )
    versao = models.PositiveIntegerField(
        default=0,
        help_text="Versão otimista da ordem dos cartões"
    )
    limite_wip = models.IntegerField(
        default=0,
        help_text="Work In Progress - 0 = sem limite"
    )
    cor = models.CharField(max_length=7, default='#6B7280')

    class Meta:
        db_table = 'coluna'
        ordering = ['posicao', 'id']
        indexes = [
            models.Index(fields=['board', 'posicao']),
        ]

    def __str__(self):
        return f"{self.titulo} - {self.board.titulo}"

    def pode_adicionar_item(self):
        """Verifica se pode adicionar item respeitando WIP"""
        if self.limite_wip == 0:
            return True
        return self.cartoes.filter(arquivado=False).count() < self.limite_wip


class Cartao(models.Model):
    """Cartão do board - a posição só muda pelo OrderingStore"""

    PRIORIDADE_CHOICES = [
        ('baixa', '🟢 Baixa'),
        ('media', '🟡 Média'),
        ('alta', '🟠 Alta'),
        ('critica', '🔴 Crítica'),
    ]

    titulo = models.CharField(max_length=200)
    descricao = models.TextField(blank=True)
    coluna = models.ForeignKey(
        Coluna,
        on_delete=models.CASCADE,
        related_name='cartoes'
    )
    posicao = models.DecimalField(
        max_digits=POSICAO_MAX_DIGITOS,
        decimal_places=POSICAO_CASAS_DECIMAIS
    )
    responsaveis = models.ManyToManyField(
        Usuario,
        blank=True,
        related_name='cartoes_responsavel'
    )
    prioridade = models.CharField(
        max_length=10,
        choices=PRIORIDADE_CHOICES,
        default='media'
    )
    prazo = models.DateField(null=True, blank=True)
    arquivado = models.BooleanField(default=False)
    criado_por = models.ForeignKey(
        Usuario,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='cartoes_criados'
    )
    criado_em = models.DateTimeField(auto_now_add=True)
    atualizado_em = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'cartao'
        ordering = ['posicao', 'id']
        indexes = [
            models.Index(fields=['coluna', 'arquivado', 'posicao']),
        ]

    def __str__(self):
        return self.titulo


class Comentario(models.Model):
    """Comentários em cartões"""

    usuario = models.ForeignKey(
        Usuario,
        on_delete=models.CASCADE,
        related_name='comentarios'
    )
    cartao = models.ForeignKey(
        Cartao,
        on_delete=models.CASCADE,
        related_name='comentarios'
    )
    texto = models.TextField()
    mencionados = models.ManyToManyField(
        Usuario,
        blank=True,
        related_name='mencoes'
    )
    criado_em = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'comentario'
        ordering = ['-criado_em']

    def __str__(self):
        return f"Comentário de {self.usuario.username} em {self.criado_em:%d/%m/%Y}"


class RegistroMudanca(models.Model):
    """
    Entrada do registro de mudanças (append-only)

    `dados` guarda o payload completo da ChangeEntry; as colunas
    desnormalizadas existem para consulta e para o admin.
    """

    board = models.ForeignKey(
        Board,
        on_delete=models.CASCADE,
        related_name='mudancas'
    )
    sequencia = models.PositiveBigIntegerField()
    operacao = models.CharField(max_length=32)
    entidade_id = models.CharField(max_length=64)
    sessao = models.CharField(max_length=128, blank=True)
    usuario = models.ForeignKey(
        Usuario,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='mudancas'
    )
    dados = models.JSONField()
    criado_em = models.DateTimeField()

    class Meta:
        db_table = 'registro_mudanca'
        ordering = ['board', 'sequencia']
        constraints = [
            models.UniqueConstraint(fields=['board', 'sequencia'], name='mudanca_sequencia_unica'),
        ]

    def __str__(self):
        return f"{self.board_id}:{self.sequencia} {self.operacao}"


def _expiracao_padrao():
    dias = settings.VORTEX_SYNC.get('NOTIFICATION_TTL_DAYS', 30)
    return timezone.now() + timedelta(days=dias)


class Notificacao(models.Model):
    """Notificação de atividade - única por (origem, destinatário, tipo)"""

    TIPO_CHOICES = [
        ('card_assigned', 'Atribuído ao cartão'),
        ('card_unassigned', 'Removido do cartão'),
        ('comment_mention', 'Mencionado em comentário'),
        ('due_date_changed', 'Prazo alterado'),
    ]

    destinatario = models.ForeignKey(
        Usuario,
        on_delete=models.CASCADE,
        related_name='notificacoes'
    )
    origem = models.CharField(
        max_length=100,
        help_text="entry_id da mudança que gerou a notificação"
    )
    tipo = models.CharField(max_length=32, choices=TIPO_CHOICES)
    board_id_ref = models.CharField(max_length=64, blank=True)
    cartao_id_ref = models.CharField(max_length=64, blank=True)
    ator_id_ref = models.CharField(max_length=64, blank=True)
    lida = models.BooleanField(default=False)
    lida_em = models.DateTimeField(null=True, blank=True)
    criado_em = models.DateTimeField(default=timezone.now)
    expira_em = models.DateTimeField(default=_expiracao_padrao)

    class Meta:
        db_table = 'notificacao'
        ordering = ['-criado_em', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['origem', 'destinatario', 'tipo'],
                name='notificacao_unica'
            ),
        ]
        indexes = [
            models.Index(fields=['destinatario', 'lida']),
        ]

    def __str__(self):
        return f"{self.tipo} para {self.destinatario_id}"
