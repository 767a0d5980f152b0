# CLI argument parsing for dockhand

import argparse


class Tee:
    """Duplicate stdout/stderr to a file and the console."""
    def __init__(self, *files):
        self.files = files
    def write(self, data):
        for f in self.files:
            f.write(data)
    def flush(self):
        for f in self.files:
            f.flush()
    def isatty(self):
        return False


def build_parser():
    p = argparse.ArgumentParser(
        prog="dockhand",
        description="Push, pull, inspect and delete images on a Docker Registry v2.",
    )
    # Connection options (override DOCKHAND_* environment variables)
    p.add_argument("--host", help="Registry hostname (default: $DOCKHAND_REGISTRY_HOST)")
    p.add_argument("--port", type=int, help="Registry port")
    p.add_argument("--scheme", choices=["http", "https"], help="Registry URL scheme")
    p.add_argument("--user", "-u", dest="username", help="Basic-auth user")
    p.add_argument("--password", "-p", help="Basic-auth password")
    p.add_argument(
        "--local-store",
        dest="local_store",
        metavar="DIR",
        help="Use a local image store in DIR instead of a registry",
    )
    p.add_argument(
        "--log-file", "-l",
        dest="log_file",
        help="Path to save a complete log of output",
    )
    p.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log every registry request",
    )

    sub = p.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    sub.add_parser("ping", help="Check that the registry answers /v2/")

    push = sub.add_parser("push", help="Push a legacy image archive")
    push.add_argument("archive", help="Tar file with a 'repositories' index and <id>/layer.tar entries")
    push.add_argument("image_ref", help="Destination repo:tag")

    pull = sub.add_parser("pull", help="Pull an image into a tar of layer blobs")
    pull.add_argument("image_ref", help="Source repo:tag")
    pull.add_argument("destination", help="Output tar path")

    exists = sub.add_parser("exists", help="Exit 0 if the image exists, 1 otherwise")
    exists.add_argument("image_ref", help="repo:tag")

    info = sub.add_parser("info", help="Show the content digest and layer digests")
    info.add_argument("image_ref", help="repo:tag")

    delete = sub.add_parser("delete", help="Delete an image and its layer blobs")
    delete.add_argument("image_ref", help="repo:tag")

    return p


def parse_args(argv=None):
    return build_parser().parse_args(argv)
