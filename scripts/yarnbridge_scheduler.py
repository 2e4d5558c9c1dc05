#!/usr/bin/env python3

"""Script for launching the framework that runs YARN NodeManagers on Mesos."""

import logging
import signal
import sys
import threading

import katsdpservices
import pymesos

from yarnbridge import config, profiles, scheduler


def main() -> None:
    args = scheduler.parse_args()
    katsdpservices.setup_logging()
    if args.log_level is not None:
        logging.root.setLevel(args.log_level.upper())

    logger = logging.getLogger('yarnbridge')
    try:
        conf = config.load_config_file(args.config)
        node_tasks = [
            profiles.NodeTask(profiles.node_manager_profile(conf, profile), hostname=hostname)
            for profile, hostname in args.node_manager
        ]
        node_tasks += [
            profiles.NodeTask(profiles.service_profile(conf, name), task_prefix=name)
            for name in args.service
        ]
        sched = scheduler.Scheduler(conf, args.properties)
    except (OSError, config.InvalidConfigurationError) as exc:
        logger.error('%s', exc)
        sys.exit(1)
    for node_task in node_tasks:
        sched.add_task(node_task)

    logger.info("Starting framework %s", conf.framework_name)
    driver = pymesos.MesosSchedulerDriver(
        sched, scheduler.framework_info(conf, args.principal), args.mesos_master,
        use_addict=True, implicit_acknowledgements=False)
    driver.start()

    stop = threading.Event()
    for sig in [signal.SIGINT, signal.SIGTERM]:
        signal.signal(sig, lambda signum, frame: stop.set())
    stop.wait()
    logger.info("Stopping framework")
    driver.stop()
    driver.join()


if __name__ == "__main__":
    main()
