import logging
import sys

from qrun.services.events import install_event_handler

def configure_logging(verbose: bool = False, quiet: bool = False):
    """
    stderr gets human readable progress (DEBUG when verbose, warnings only
    when quiet); stdout is reserved for JSON lifecycle events.
    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )
    # boto debug output drowns everything else
    for noisy in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    install_event_handler()
