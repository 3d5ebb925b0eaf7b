#!/usr/bin/env python
"""
Django's command-line utility for administrative tasks.

Vortex Board - Ordenação e sincronização em tempo real
Startup Vórtex © 2024
"""

import os
import sys


def main():
    """Run administrative tasks."""

    # Configuração padrão para desenvolvimento
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings.development')

    try:
        from django.core.management import execute_from_command_line
    except ImportError as exc:
        raise ImportError(
            "Couldn't import Django. Are you sure it's installed and "
            "available on your PYTHONPATH environment variable? Did you "
            "forget to activate a virtual environment?"
        ) from exc

    # Comandos customizados do Vortex Board
    if len(sys.argv) > 1:
        command = sys.argv[1]

        # Comando de setup inicial
        if command == 'setup':
            print("🚀 Configurando Vortex Board...")

            # Executar migrações
            print("📊 Aplicando migrações...")
            if os.system('python manage.py makemigrations core') != 0 or os.system('python manage.py migrate') != 0:
                print("❌ Erro nas migrações")
                return

            # Criar superusuário se não existir
            print("👤 Verificando superusuário...")
            exit_code = os.system(
                'python manage.py shell -c "from apps.core.models import Usuario; Usuario.objects.filter(is_superuser=True).exists() or Usuario.objects.create_superuser(\'admin\', \'admin@vortex.com.br\', \'admin123\', tipo=\'admin\')"')

            if exit_code == 0:
                # Garantir chaves de posição bem espaçadas
                print("📐 Rebalanceando posições...")
                os.system('python manage.py rebalancear_posicoes')

                print("✅ Setup concluído!")
                print("🔑 Acesse com: admin/admin123")
            else:
                print("⚠️  Setup parcial concluído")
            return

        elif command == 'backup':
            print("💾 Criando backup do banco...")
            from datetime import datetime
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
            backup_file = f"backup_vortex_{timestamp}.json"
            os.system(f'python manage.py dumpdata --indent 2 > {backup_file}')
            print(f"✅ Backup criado: {backup_file}")
            return

    execute_from_command_line(sys.argv)


if __name__ == '__main__':
    main()
