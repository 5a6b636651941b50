#!/usr/bin/env python3
"""
Generate a ClusterShell (clush) groups file from a list of IPv4 addresses.

Lines starting with # and blank lines are ignored, invalid addresses are
skipped with a warning, duplicates are dropped keeping the first occurrence.
Once written, target the group with: clush -w @<group> hostname
"""
import os
import re
import sys
import logging
import argparse
import tempfile

import yaml

IPV4_RE = re.compile(r"^([0-9]{1,3})\.([0-9]{1,3})\.([0-9]{1,3})\.([0-9]{1,3})$")


class ClushConfigError(ValueError):
    pass


def is_valid_ipv4(text: str) -> bool:
    m = IPV4_RE.match(text)
    return bool(m) and all(0 <= int(octet) <= 255 for octet in m.groups())


def read_ip_list(lines) -> list[str]:
    ips = []
    for raw in lines:
        line = raw.rstrip("\r\n").split("#", 1)[0].strip()
        if not line:
            continue
        if not is_valid_ipv4(line):
            logging.warning(f"Skipping invalid IPv4 address: {line}")
            continue
        if line not in ips:
            ips.append(line)
    return ips


def render_groups_yaml(group: str, ips: list[str]) -> str:
    return yaml.safe_dump({group: ips}, default_flow_style=False, sort_keys=False)


def default_output_path(group: str) -> str:
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(config_home, "clustershell", "groups.d", f"{group}.yaml")


def write_groups_file(content: str, output_path: str) -> str:
    """Write atomically and make the file world readable."""
    directory = os.path.dirname(output_path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".clush.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp, 0o644)
        os.replace(tmp, output_path)
    except OSError:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    return output_path


def generate(input_path, group="cluster", output_path=None, dry_run=False, stdout=sys.stdout):
    if not os.path.isfile(input_path):
        raise ClushConfigError(f"input file not found: {input_path}")
    with open(input_path, encoding="utf-8") as f:
        ips = read_ip_list(f)
    if not ips:
        raise ClushConfigError(f"no valid IPv4 addresses found in {input_path}")

    content = render_groups_yaml(group, ips)
    if dry_run:
        stdout.write(content)
        return None, ips

    output_path = output_path or default_output_path(group)
    write_groups_file(content, output_path)
    logging.info(f"ClusterShell groups file written: {output_path}")
    logging.info(f"Group name: {group}, members: {len(ips)} IP(s)")
    logging.info(f"Use with clush like: clush -w @{group} hostname")
    return output_path, ips


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="hpc-audit-clush",
        description="Generate ClusterShell groups YAML from a list of IPv4 addresses.",
    )
    parser.add_argument("-g", "--group", default="cluster", help="group name (default: cluster)")
    parser.add_argument("-i", "--input", default="clusterip.txt", help="input file (default: clusterip.txt)")
    parser.add_argument("-o", "--output", help="output file (default: ~/.config/clustershell/groups.d/<group>.yaml)")
    parser.add_argument("--dry-run", action="store_true", help="print the YAML instead of writing it")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    try:
        generate(args.input, args.group, args.output, args.dry_run)
    except (ClushConfigError, OSError) as e:
        logging.error(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
