#  dockhand main CLI: push, pull, inspect and delete images on a registry
#  (or in a local image store), with optional log file tee
import logging
import sys
from dataclasses import replace

from rich.console import Console
from rich.logging import RichHandler

from dockhand.config import LOG_LEVEL, RegistryConfig
from dockhand.modules.cli import Tee, parse_args
from dockhand.modules.errors import DockhandError, ImageNotFoundError
from dockhand.modules.formatters import human_readable_size, parse_image_ref
from dockhand.modules.keepers.stores import RegistryImageStore, open_image_store
from dockhand.modules.registry import open_registry_connection

logger = logging.getLogger("dockhand")


def build_config(args) -> RegistryConfig:
    """Environment first, then command line options; --local-store drops the registry."""
    config = RegistryConfig.from_env(
        host=args.host,
        port=args.port,
        scheme=args.scheme,
        username=args.username,
        password=args.password,
    )
    if args.local_store:
        config = replace(config, host="", store_dir=args.local_store)
    return config


def setup_logging(verbose: bool):
    level = logging.DEBUG if verbose else LOG_LEVEL
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # urllib3 connection chatter only with --verbose
    logging.getLogger("urllib3").setLevel(logging.DEBUG if verbose else logging.WARNING)


def run(args, console: Console) -> int:
    config = build_config(args)
    logger.debug(f"Using {config!r}")

    # --- ping: registry only ---
    if args.command == "ping":
        if not config.has_registry:
            console.print("[!] No registry host configured (use --host or DOCKHAND_REGISTRY_HOST)", markup=False)
            return 1
        with open_registry_connection(config):
            console.print(f"[+] Registry {config.base_url} is reachable", markup=False)
        return 0

    repo, tag = parse_image_ref(args.image_ref)
    where = config.base_url if config.has_registry else config.store_dir

    with open_image_store(config) as store:
        # --- push ---
        if args.command == "push":
            console.print(f"[*] Pushing {args.archive} as {repo}:{tag} to {where}", markup=False)
            store.store_image(repo, tag, args.archive)
            console.print(f"[+] Pushed {repo}:{tag}", markup=False)
            return 0

        # --- pull ---
        if args.command == "pull":
            console.print(f"[*] Pulling {repo}:{tag} from {where}", markup=False)
            path = store.get_image(repo, tag, args.destination)
            console.print(f"[+] Wrote {path}", markup=False)
            return 0

        # --- exists ---
        if args.command == "exists":
            if store.image_exists(repo, tag):
                console.print(f"[+] {repo}:{tag} exists", markup=False)
                return 0
            console.print(f"[!] {repo}:{tag} not found", markup=False)
            return 1

        # --- info ---
        if args.command == "info":
            if isinstance(store, RegistryImageStore):
                content_digest, layers = store.client.get_image_info(repo, tag)
                console.print(f"\n{repo}:{tag}", markup=False)
                console.print(f"    Content digest: {content_digest or '-'}", markup=False)
                console.print(f"    Layers: {len(layers)}", markup=False)
                for idx, digest in enumerate(layers):
                    console.print(f" [{idx}] {digest}", markup=False)
                return 0
            records = [r for r in store.list_images(repo) if r["tag"] == tag]
            if not records:
                raise ImageNotFoundError(repo, tag)
            record = records[0]
            console.print(f"\n{repo}:{tag}", markup=False)
            console.print(f"    Image id: {record['image_id']}", markup=False)
            console.print(f"    Layers: {record['layer_count']}", markup=False)
            console.print(f"    Archive: {record['archive_path']} ({human_readable_size(record['archive_size'])})", markup=False)
            console.print(f"    Stored at: {record['stored_at']}", markup=False)
            return 0

        # --- delete ---
        if args.command == "delete":
            store.delete_image(repo, tag)
            console.print(f"[+] Deleted {repo}:{tag}", markup=False)
            return 0

    return 2


def main(argv=None) -> int:
    args = parse_args(argv)

    # set up logging/tee if requested
    log_f = None
    saved = sys.stdout, sys.stderr
    if args.log_file:
        log_f = open(args.log_file, "w", encoding="utf-8")
        sys.stdout = Tee(sys.stdout, log_f)
        sys.stderr = Tee(sys.stderr, log_f)

    try:
        setup_logging(args.verbose)
        console = Console(highlight=False, soft_wrap=True)
        try:
            return run(args, console)
        except DockhandError as e:
            console.print(f"[!] Error: {e}", style="bold red", markup=False)
            return 1
    finally:
        if log_f:
            sys.stdout, sys.stderr = saved
            log_f.close()


if __name__ == "__main__":
    sys.exit(main())
