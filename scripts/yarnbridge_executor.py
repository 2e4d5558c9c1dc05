#!/usr/bin/env python3

"""Script for running the executor that tracks YARN containers."""

import argparse
import logging

import katsdpservices
import pymesos

from yarnbridge import executor


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument('-l', '--log-level', metavar='LEVEL',
                        help='set the Python logging level [%(default)s]')
    args = parser.parse_args()
    katsdpservices.setup_logging()
    if args.log_level is not None:
        logging.root.setLevel(args.log_level.upper())

    driver = pymesos.MesosExecutorDriver(executor.Executor(), use_addict=True)
    driver.run()


if __name__ == "__main__":
    main()
