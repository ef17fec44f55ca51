from __future__ import annotations

import argparse
import getpass
import logging
import stat
import sys
import time
from importlib.resources import files
from pathlib import Path

logger = logging.getLogger(__name__)


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed.

    Uses dotenv.set_key for proper quoting (handles #, spaces, etc.).
    """
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  AVISO: {env_file} tem permissões abertas.")
            print("  Recomendação: chmod 600", env_file)
    except OSError:
        pass


def _setup_api_key(config_dir: Path) -> bool:
    """Interactive NFe.io API key setup. Returns True if a key was stored."""
    print()
    print("Configuração da chave NFe.io")
    print("────────────────────────────")
    print("Use a \"Chave de Nota Fiscal\" (CONTA -> CHAVE DE ACESSO no painel).")
    print()

    api_key = getpass.getpass("Chave da API (vazio para pular): ").strip()
    if not api_key:
        print("  Configuração da chave pulada.")
        return False

    env_file = config_dir / ".env"
    print()
    print("Onde deseja armazenar a chave?")
    keyring_ok = _check_keyring_available()
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "Keychain do sistema (recomendado)"))
    options.append(("2", "Arquivo .env no diretório de configuração"))
    for num, label in options:
        print(f"  {num}. {label}")
    if not keyring_ok:
        print()
        print("  Nota: keychain do sistema indisponível (sem backend configurado).")

    print()
    valid_choices = {num for num, _ in options}
    choice = ""
    while choice not in valid_choices:
        choice = input(f"Escolha [{'/'.join(sorted(valid_choices))}]: ").strip()

    from faturador.config import _set_keyring_api_key

    if choice == "1" and _set_keyring_api_key(api_key):
        print("  Chave armazenada no keychain do sistema.")
        _remove_env_var(env_file, "NFEIO_API_KEY")
        return True
    if choice == "1":
        print("  ERRO: Falha ao armazenar no keychain. Salvando no .env como alternativa.")
    _upsert_env_var(env_file, "NFEIO_API_KEY", api_key)
    print(f"  Chave salva em {env_file}")
    _warn_open_permissions(env_file)
    return True


def _init_config() -> int:
    """Copy bundled templates to the user's config directory."""
    from faturador.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("faturador") / "templates"

    config_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    copied = 0
    for rel in ["faturador.yaml.example", "schema.sql"]:
        dest = config_dir / rel
        if dest.exists():
            print(f"  já existe: {dest}")
            continue
        src = templates / rel
        with src.open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  criado: {dest}")
        copied += 1

    print()
    print(f"Configuração: {config_dir}")
    print(f"Dados:   {data_dir}")

    key_configured = False
    try:
        answer = input("\nDeseja configurar a chave da NFe.io agora? [S/n]: ").strip().lower()
        if answer in ("", "s", "sim", "y", "yes"):
            key_configured = _setup_api_key(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()

    print()
    if copied:
        print("Próximos passos:")
        print(f"  1. cp {config_dir / 'faturador.yaml.example'} {config_dir / 'faturador.yaml'}")
        print("  2. Defina database_url (ou DATABASE_URL) e aplique schema.sql no banco")
        if not key_configured:
            print("  3. Defina NFEIO_API_KEY no .env ou execute 'faturador init' novamente")
    else:
        print("Nenhum arquivo novo criado (todos já existiam).")
    return 0


# --- Output helpers ---


def _print_outcome(outcome) -> None:
    status = outcome.status.value if outcome.status else "-"
    if outcome.ok:
        line = f"OK    {outcome.invoice_id}  {status}"
        if outcome.reference:
            line += f"  ref={outcome.reference}"
        if outcome.message:
            line += f"  {outcome.message}"
        print(line)
        return
    retry = " (pode ser reenviada)" if outcome.retryable else ""
    print(f"FALHA {outcome.invoice_id}  {status}  [{outcome.kind.value}] {outcome.message}{retry}")


# --- Commands ---


def _cmd_emit(services, args: argparse.Namespace) -> int:
    outcome = services.emission.submit_draft(args.invoice_id)
    _print_outcome(outcome)
    return 0 if outcome.ok else 1


def _cmd_emit_batch(services, args: argparse.Namespace) -> int:
    report = services.emission.emit_batch(args.invoice_ids)
    for outcome in report.outcomes:
        _print_outcome(outcome)
    print()
    print(f"Emitidas: {report.succeeded}  Falhas: {report.failed}")
    return 0 if report.failed == 0 else 1


def _cmd_cancel(services, args: argparse.Namespace) -> int:
    outcome = services.emission.cancel(args.invoice_id, args.reason)
    _print_outcome(outcome)
    return 0 if outcome.ok else 1


def _cmd_reconcile(services, args: argparse.Namespace) -> int:
    outcome = services.emission.reconcile(args.invoice_id)
    _print_outcome(outcome)
    return 0 if outcome.ok else 1


def _cmd_document(services, args: argparse.Namespace) -> int:
    from faturador.models.invoice import DocumentKind

    kind = DocumentKind(args.kind)
    result = services.emission.fetch_document(args.invoice_id, kind)
    if not result.ok:
        print(f"FALHA {args.invoice_id}  [{result.failure.value}] {result.message}")
        return 1
    out = Path(args.output or f"nfse_{args.invoice_id}.{kind.value}")
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(result.content)
    print(f"Documento salvo em {out}")
    if result.metadata is not None and result.metadata.number:
        print(f"  Número: {result.metadata.number}")
        print(f"  Código de verificação: {result.metadata.check_code or '-'}")
        print(f"  Emissão: {result.metadata.issued_at or '-'}")
    return 0


def _cmd_diagnose(services, args: argparse.Namespace) -> int:
    diagnosis = services.emission.diagnose(args.invoice_id)
    if diagnosis is None:
        print(f"Nota fiscal {args.invoice_id} não encontrada")
        return 1
    for d in diagnosis.diagnostics:
        print(f"  [{d.level.value:5}] {d.field}: {d.message}")
    return 0 if diagnosis.ok else 1


def _cmd_companies(services, args: argparse.Namespace) -> int:
    from faturador.utils.formatters import format_tax_id

    result = services.client.list_companies()
    if not result.ok:
        print(f"FALHA [{result.kind.value}] {result.message}")
        if result.suggestion:
            print(f"  {result.suggestion}")
        return 1
    if not result.value:
        print("Nenhuma empresa cadastrada na NFe.io")
    for company in result.value:
        tax_id = company.get("federalTaxNumber") or company.get("cnpj") or ""
        print(f"  {company.get('id', '-')}  {format_tax_id(tax_id)}  {company.get('name', '')}")
    return 0


def _cmd_webhook(services, args: argparse.Namespace) -> int:
    body = sys.stdin.buffer.read() if args.body_file == "-" else Path(args.body_file).read_bytes()
    result = services.emission.handle_webhook(body, args.signature)
    status = result.status.value if result.status else "-"
    print(f"HTTP {result.status_code}  {result.invoice_id or '-'}  {status}  {result.message}")
    return 0 if result.accepted else 1


def _cmd_worker(services, args: argparse.Namespace) -> int:
    services.scheduler.start()
    print("Processando re-consultas agendadas (Ctrl+C para sair)…")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print()
    return 0


_COMMANDS = {
    "emit": _cmd_emit,
    "emit-batch": _cmd_emit_batch,
    "cancel": _cmd_cancel,
    "reconcile": _cmd_reconcile,
    "document": _cmd_document,
    "diagnose": _cmd_diagnose,
    "companies": _cmd_companies,
    "webhook": _cmd_webhook,
    "worker": _cmd_worker,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="faturador", description="Emissão e conciliação de NFS-e via NFe.io"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log detalhado (DEBUG)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="cria arquivos de configuração de exemplo")

    p = sub.add_parser("emit", help="emite um rascunho")
    p.add_argument("invoice_id")

    p = sub.add_parser("emit-batch", help="emite vários rascunhos em sequência")
    p.add_argument("invoice_ids", nargs="+")

    p = sub.add_parser("cancel", help="cancela uma nota autorizada")
    p.add_argument("invoice_id")
    p.add_argument("--reason", help="motivo do cancelamento")

    p = sub.add_parser("reconcile", help="atualiza o status com a NFe.io")
    p.add_argument("invoice_id")

    p = sub.add_parser("document", help="baixa o XML ou PDF da nota")
    p.add_argument("invoice_id")
    p.add_argument("kind", choices=["xml", "pdf"])
    p.add_argument("-o", "--output", help="arquivo de destino")

    p = sub.add_parser("diagnose", help="verifica se o rascunho está pronto")
    p.add_argument("invoice_id")

    sub.add_parser("companies", help="lista empresas cadastradas na NFe.io")
    p = sub.add_parser("webhook", help="processa uma notificação da NFe.io salva em arquivo")
    p.add_argument("body_file", help="corpo JSON recebido (- para stdin)")
    p.add_argument("--signature", help="valor do cabeçalho X-NFeIO-Signature")

    sub.add_parser("worker", help="executa as re-consultas agendadas")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point for the faturador CLI."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "init":
        sys.exit(_init_config())

    from faturador.bootstrap import build_services
    from faturador.config import load_settings

    try:
        settings = load_settings()
    except KeyError as e:
        print(f"Erro: configuração ausente: {e.args[0]}")
        print("Execute 'faturador init' e defina as variáveis no .env ou faturador.yaml.")
        sys.exit(1)
    except ValueError as e:
        print(f"Erro: {e}")
        sys.exit(1)

    services = build_services(settings)
    try:
        code = _COMMANDS[args.command](services, args)
        if args.command != "worker" and services.scheduler.pending():
            # one-shot commands wait out the queued re-poll before exiting
            logger.debug("Waiting %.1fs for pending re-poll", settings.repoll_delay)
            time.sleep(settings.repoll_delay)
            services.scheduler.flush()
    finally:
        services.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
