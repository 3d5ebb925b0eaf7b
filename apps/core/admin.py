# apps/core/admin.py

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.utils.html import format_html

from .models import (
    Board, Cartao, Coluna, Comentario, Notificacao, Projeto, RegistroMudanca, Usuario
)


@admin.register(Usuario)
class UsuarioAdmin(BaseUserAdmin):
    """Admin customizado para o modelo Usuario"""

    list_display = [
        'username', 'email', 'get_full_name', 'tipo_badge',
        'is_active', 'date_joined'
    ]
    list_filter = ['tipo', 'is_staff', 'is_active', 'date_joined']
    search_fields = ['username', 'first_name', 'last_name', 'email']
    ordering = ['-date_joined']

    fieldsets = BaseUserAdmin.fieldsets + (
        ('Informações Adicionais', {
            'fields': ('tipo',)
        }),
    )

    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ('Informações Adicionais', {
            'fields': ('tipo',)
        }),
    )

    def tipo_badge(self, obj):
        """Exibe o tipo de usuário com badge colorido"""
        cores = {
            'admin': '#EF4444',  # vermelho
            'gerente': '#F59E0B',  # amarelo
            'funcionario': '#3B82F6'  # azul
        }
        cor = cores.get(obj.tipo, '#6B7280')
        return format_html(
            '<span style="background-color: {}; color: white; '
            'padding: 3px 8px; border-radius: 4px; font-size: 11px;">{}</span>',
            cor, obj.get_tipo_display()
        )

    tipo_badge.short_description = 'Tipo'


@admin.register(Projeto)
class ProjetoAdmin(admin.ModelAdmin):
    """Admin para gerenciamento de projetos"""

    list_display = ['nome', 'criado_por', 'membros_count', 'ativo', 'criado_em']
    list_filter = ['ativo', 'criado_em']
    search_fields = ['nome', 'descricao']
    filter_horizontal = ['membros']
    readonly_fields = ['criado_em', 'atualizado_em']

    def membros_count(self, obj):
        """Conta quantidade de membros"""
        return obj.membros.count()

    membros_count.short_description = 'Membros'


class ColunaInline(admin.TabularInline):
    model = Coluna
    extra = 0
    fields = ['titulo', 'posicao', 'versao', 'limite_wip', 'cor']
    readonly_fields = ['posicao', 'versao']


@admin.register(Board)
class BoardAdmin(admin.ModelAdmin):
    """Admin para boards Kanban - posições são somente leitura"""

    list_display = ['titulo', 'projeto', 'colunas_count', 'versao', 'ultima_sequencia', 'ativo']
    list_filter = ['ativo', 'projeto']
    search_fields = ['titulo', 'descricao', 'projeto__nome']
    readonly_fields = ['versao', 'ultima_sequencia', 'criado_em']
    inlines = [ColunaInline]

    def colunas_count(self, obj):
        """Conta colunas do board"""
        return obj.colunas.count()

    colunas_count.short_description = 'Colunas'


@admin.register(Cartao)
class CartaoAdmin(admin.ModelAdmin):
    list_display = ['titulo', 'coluna', 'posicao', 'prioridade', 'prazo', 'arquivado']
    list_filter = ['prioridade', 'arquivado', 'coluna__board']
    search_fields = ['titulo', 'descricao']
    filter_horizontal = ['responsaveis']
    readonly_fields = ['coluna', 'posicao', 'criado_em', 'atualizado_em']


@admin.register(Comentario)
class ComentarioAdmin(admin.ModelAdmin):
    list_display = ['usuario', 'cartao', 'criado_em']
    search_fields = ['texto', 'usuario__username']
    readonly_fields = ['criado_em']


@admin.register(RegistroMudanca)
class RegistroMudancaAdmin(admin.ModelAdmin):
    """Registro append-only: nada pode ser editado ou removido"""

    list_display = ['board', 'sequencia', 'operacao', 'entidade_id', 'usuario', 'criado_em']
    list_filter = ['operacao', 'board']
    search_fields = ['entidade_id', 'sessao']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Notificacao)
class NotificacaoAdmin(admin.ModelAdmin):
    list_display = ['destinatario', 'tipo', 'origem', 'lida', 'criado_em', 'expira_em']
    list_filter = ['tipo', 'lida']
    search_fields = ['origem', 'destinatario__username']
    readonly_fields = ['origem', 'criado_em']
