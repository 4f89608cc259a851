import asyncio
import json
import logging
import signal
import sys
from typing import Optional

import click
from pydantic import ValidationError

from qrun.commands.check import QueueChecker
from qrun.commands.enqueue import Enqueuer, parse_batch_lines
from qrun.commands.idle_queues import IdleQueues
from qrun.commands.monitor import monitor as run_monitor
from qrun.domain.errors import QrunError, UsageError
from qrun.domain.models import RunStats
from qrun.logging_config import configure_logging
from qrun.metrics import start_metrics_server
from qrun.scheduler.consumer import Consumer
from qrun.services.cache import Cache
from qrun.services.cloudwatch import CloudWatchClient
from qrun.services.dedup import Deduplicator
from qrun.services.idle_check import IdleChecker
from qrun.services.qrl_cache import QrlCache
from qrun.services.sqs import SqsClient
from qrun.settings import Settings, set_settings
from qrun.utils.shutdown import ShutdownToken

logger = logging.getLogger(__name__)

def build_settings(ctx: click.Context, **options) -> Settings:
    """
    Merges global and command options into one Settings. Options left at
    None (or unset flags) fall through to QRUN_* env vars and defaults.
    """
    merged = dict(ctx.obj or {})
    merged.update(options)
    values = {key: value for key, value in merged.items() if value is not None and value is not False and value != ()}
    try:
        settings = Settings(**values)
    except ValidationError as e:
        raise click.UsageError("; ".join(err["msg"] for err in e.errors()))
    set_settings(settings)
    configure_logging(verbose=settings.verbose, quiet=settings.quiet)
    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)
    return settings

def run_async(coro):
    try:
        return asyncio.run(coro)
    except UsageError as e:
        raise click.UsageError(str(e))
    except QrunError as e:
        raise click.ClickException(str(e))

def parse_tags(tags) -> dict:
    parsed = {}
    for tag in tags:
        if "=" not in tag:
            raise click.UsageError('Tags must be separated with the "=" character.')
        key, value = tag.split("=", 1)
        parsed[key] = value
    return parsed

def enqueue_options(f):
    options = [
        click.option("--fifo", "-f", is_flag=True, help="Create new queues as FIFOs."),
        click.option("--group-id", "-g", help="FIFO group id for every message in this invocation."),
        click.option("--group-id-per-message", is_flag=True, help="Unique FIFO group id for every message."),
        click.option("--deduplication-id", help="Message deduplication id given to SQS."),
        click.option("--dedup-id-per-message", is_flag=True, help="Unique deduplication id for every message."),
        click.option("--message-retention-period", type=int, help="Seconds to retain jobs (up to 14 days)."),
        click.option("--delay", type=int, help="Delay delivery by this many seconds (up to 900)."),
        click.option("--send-retries", type=int, help="Attempts per send before giving up."),
        click.option("--fail-delay", type=int, help="Delay on the fail queue when it is created."),
        click.option("--dlq/--no-dlq", default=None, help="Route repeated failures to a dead letter queue."),
        click.option("--dlq-after", type=int, help="Failures in the fail queue before the DLQ."),
        click.option("--tag", "tags", multiple=True, help="Key=Value tag for created queues. Repeatable."),
    ]
    for option in reversed(options):
        f = option(f)
    return f

def _enqueue_settings(ctx, tags, dlq, **options) -> Settings:
    # --no-dlq has to survive the None/False filtering in build_settings
    settings = build_settings(ctx, tags=parse_tags(tags) or None, **options)
    if dlq is False:
        settings = settings.model_copy(update={"dlq": False})
        set_settings(settings)
    return settings

@click.version_option("0.1.0")
@click.group()
@click.option("--prefix", help="Prefix for every queue name [default: qdone_].")
@click.option("--fail-suffix", help="Suffix of fail queues [default: _failed].")
@click.option("--dlq-suffix", help="Suffix of dead letter queues [default: _dead].")
@click.option("--region", help="AWS region [default: us-east-1].")
@click.option("--endpoint-url", help="Alternative SQS/CloudWatch endpoint.")
@click.option("--quiet", "-q", is_flag=True, help="Only warnings and errors on stderr (JSON events are still written to stdout).")
@click.option("--verbose", "-v", is_flag=True, help="Human readable progress instead of JSON events.")
@click.option("--cache-uri", help="Redis URI (redis:// or redis-cluster://).")
@click.option("--cache-prefix", help="Prefix for every cache key [default: qdone:].")
@click.option("--cache-ttl-seconds", type=int, help="Seconds to cache queue attribute lookups.")
@click.option("--external-dedup", is_flag=True, help="Deduplicate in Redis instead of SQS.")
@click.option("--dedup-period", type=int, help="Seconds a duplicate command is suppressed.")
@click.option("--disable-log", is_flag=True, help="No JSON lifecycle events on stdout.")
@click.option("--metrics-port", type=int, help="Serve Prometheus metrics on this port.")
@click.pass_context
def main(ctx, **options):
    """qrun - shell commands as SQS jobs"""
    ctx.obj = options

@main.command()
@enqueue_options
@click.argument("queue")
@click.argument("command")
@click.pass_context
def enqueue(ctx, queue, command, tags, dlq, **options):
    """Enqueue COMMAND on QUEUE."""
    settings = _enqueue_settings(ctx, tags, dlq, **options)

    async def _run():
        sqs = SqsClient.from_settings(settings)
        dedup = Deduplicator.from_settings(settings) if settings.external_dedup else None
        try:
            return await Enqueuer(sqs, settings, dedup=dedup).enqueue(queue, command)
        finally:
            if dedup is not None:
                await dedup.client.aclose()

    result = run_async(_run())
    if result is None:
        logger.info("Duplicate command, not enqueued")
    else:
        logger.info("Enqueued job %s", result["MessageId"])

@main.command("enqueue-batch")
@enqueue_options
@click.argument("files", nargs=-1, required=True, type=click.File("r"))
@click.pass_context
def enqueue_batch(ctx, files, tags, dlq, **options):
    """Enqueue `<queue> <command>` lines from FILES ("-" reads stdin)."""
    settings = _enqueue_settings(ctx, tags, dlq, **options)
    pairs = []
    for f in files:
        try:
            pairs.extend(parse_batch_lines(f))
        except UsageError as e:
            raise click.UsageError(f"{f.name}: {e}")

    async def _run():
        sqs = SqsClient.from_settings(settings)
        dedup = Deduplicator.from_settings(settings) if settings.external_dedup else None
        try:
            return await Enqueuer(sqs, settings, dedup=dedup).enqueue_batch(pairs)
        finally:
            if dedup is not None:
                await dedup.client.aclose()

    sent = run_async(_run())
    logger.info("Enqueued %d jobs", sent)

async def run_worker(queues, settings: Settings, consumer: Optional[Consumer] = None) -> RunStats:
    """
    Repeated listen passes until shutdown. With drain, stops after the first
    pass that ran no jobs. A first SIGINT/SIGTERM lets running jobs finish,
    a second one kills them.
    """
    token = consumer.token if consumer is not None else ShutdownToken()
    consumer = consumer or Consumer(list(queues), settings=settings, token=token)
    signals_seen = 0

    def on_signal():
        nonlocal signals_seen
        signals_seen += 1
        if signals_seen == 1:
            logger.warning("Shutdown requested. Waiting for running jobs; signal again to kill them.")
            token.request()
        else:
            logger.warning("Second signal, killing running jobs.")
            consumer.runner.kill_all()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
        except (NotImplementedError, RuntimeError):
            # Not supported here (Windows, or not the main thread)
            pass

    total = RunStats()
    try:
        while not token.requested:
            try:
                stats = await consumer.listen()
            except Exception as e:
                # Throttling or a queue vanishing mid-listing; try again next pass
                logger.warning("Listen pass failed, retrying in %ss: %s", max(1, settings.wait_time), e)
                await token.wait(max(1, settings.wait_time))
                continue
            total.add(stats)
            if consumer.queue_count == 0:
                if settings.drain:
                    logger.info("No queues to drain.")
                    break
                logger.info("No queues to listen on, retrying in %ss", max(1, settings.wait_time))
                await token.wait(max(1, settings.wait_time))
                continue
            if settings.drain and stats.jobs_run == 0:
                break
    finally:
        await consumer.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
    return total

@main.command()
@click.option("--kill-after", "-k", type=int, help="Kill jobs after this many seconds [default: 30].")
@click.option("--wait-time", "-w", type=int, help="Long poll wait in seconds (0-20) [default: 20].")
@click.option("--visibility-timeout", type=int, help="Initial visibility timeout [default: 30].")
@click.option("--include-failed", is_flag=True, help="Also listen on fail queues.")
@click.option("--include-dead", is_flag=True, help="Also listen on dead letter queues.")
@click.option("--active-only", is_flag=True, help="Only poll queues with messages in them.")
@click.option("--drain", is_flag=True, help="Exit once a pass runs no jobs.")
@click.option("--archive", is_flag=True, help="Print commands instead of running them.")
@click.option("--fifo", "-f", is_flag=True, help="Only listen on FIFO queues.")
@click.option("--max-concurrent-jobs", type=int, help="Jobs running at once, across queues [default: 100].")
@click.argument("queues", nargs=-1, required=True)
@click.pass_context
def worker(ctx, queues, **options):
    """Run jobs from QUEUES (wildcards allowed: 'test*')."""
    settings = build_settings(ctx, **options)

    total = run_async(run_worker(queues, settings))
    if not settings.quiet:
        click.echo(
            f"Ran {total.jobs_run} jobs: {total.jobs_succeeded} succeeded {total.jobs_failed} failed",
            err=True,
        )

@main.command("idle-queues")
@click.option("--idle-for", "-o", type=int, help="Minutes of inactivity that count as idle (min 5) [default: 60].")
@click.option("--delete", is_flag=True, help="Delete idle queues (and their fail queues).")
@click.option("--unpair", is_flag=True, help="Judge fail queues separately from their queues.")
@click.option("--include-failed", is_flag=True, help="With --unpair, also check fail queues.")
@click.argument("queues", nargs=-1, required=True)
@click.pass_context
def idle_queues(ctx, queues, delete, unpair, **options):
    """Report (and optionally delete) queues without recent traffic."""
    if options.get("include_failed") and not unpair:
        raise click.UsageError("--include-failed only makes sense with --unpair")
    settings = build_settings(ctx, **options)

    async def _run():
        sqs = SqsClient.from_settings(settings)
        cache = Cache.from_settings(settings) if settings.cache_uri else None
        checker = IdleChecker(sqs, settings, cloudwatch=CloudWatchClient.from_settings(settings), cache=cache)
        try:
            return await IdleQueues(sqs, checker, settings).run(list(queues), delete=delete, unpair=unpair)
        finally:
            if cache is not None:
                await cache.close()

    results = run_async(_run())
    if not results:
        logger.warning("No queues matched %s", " ".join(queues))
        return
    for result in results:
        if result["idle"]:
            click.echo(result["queue"])
    calls = {"SQS": 0, "CloudWatch": 0}
    for result in results:
        for key in calls:
            calls[key] += result["api_calls"][key]
    logger.info("Used %d SQS and %d CloudWatch API calls", calls["SQS"], calls["CloudWatch"])

@main.command()
@click.option("--save", "-s", is_flag=True, help="Publish the aggregate to CloudWatch.")
@click.argument("queue")
@click.pass_context
def monitor(ctx, queue, save):
    """Aggregate message counts across queues matching QUEUE (one '*')."""
    settings = build_settings(ctx)

    async def _run():
        sqs = SqsClient.from_settings(settings)
        cloudwatch = CloudWatchClient.from_settings(settings) if save else None
        return await run_monitor(QrlCache(sqs), queue, cloudwatch=cloudwatch, save=save)

    total = run_async(_run())
    click.echo(json.dumps(total))

@main.command()
@click.option("--create", is_flag=True, help="Create missing queues.")
@click.option("--overwrite", is_flag=True, help="Rewrite mismatched attributes.")
@click.option("--fifo", "-f", is_flag=True, help="Check FIFO queues.")
@click.option("--include-failed", is_flag=True, help="Also check fail queues matched by wildcards.")
@click.option("--include-dead", is_flag=True, help="Also check dead letter queues matched by wildcards.")
@click.argument("queues", nargs=-1, required=True)
@click.pass_context
def check(ctx, queues, create, overwrite, **options):
    """Verify queue, fail queue and DLQ attributes."""
    settings = build_settings(ctx, **options)

    async def _run():
        sqs = SqsClient.from_settings(settings)
        checker = QueueChecker(Enqueuer(sqs, settings), settings, create=create, overwrite=overwrite)
        return await checker.check(list(queues))

    reports = run_async(_run())
    problems = [r for r in reports if (not r["exists"] and not r["created"]) or (r["mismatched"] and not r["modified"])]
    for report in problems:
        state = "missing" if not report["exists"] else "mismatched: " + ", ".join(report["mismatched"])
        click.echo(f"{report['queue']} {state}")
    if problems:
        ctx.exit(1)

if __name__ == "__main__":
    sys.exit(main())
