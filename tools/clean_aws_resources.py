#!/usr/bin/env python3

# Copyright (c) 2020 SUSE LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


import argparse
import fnmatch

import boto3


def parse_args():
    parser = argparse.ArgumentParser(
        description="Removes EC2 resources created by kolacheck that may be "
                    "orphaned.")
    parser.add_argument('-d', '--dry-run', action='store_true',
                        help="Do not actually remove resources. "
                             " Prints what would happen.")
    parser.add_argument('-s', '--search', type=str, default="kola*",
                        help="The search glob to find leaked resources. "
                             "e.g 'kola*'")
    parser.add_argument('-r', '--region', type=str, default=None,
                        help="The AWS region to search in")
    parser.add_argument('-p', '--profile', type=str, default=None,
                        help="The AWS credentials profile to use")
    return parser.parse_args()


def print_summary(subtitle, items):
    print(subtitle)
    print('-'*len(subtitle))
    for name, _ in items:
        print(name)


def _tag_name(resource):
    for tag in resource.get('Tags', []):
        if tag['Key'] == 'Name':
            return tag['Value']
    return ''


def find_instances(ec2, search):
    found = []
    paginator = ec2.get_paginator('describe_instances')
    filters = [{'Name': 'instance-state-name',
                'Values': ['pending', 'running', 'stopping', 'stopped']}]
    for page in paginator.paginate(Filters=filters):
        for reservation in page['Reservations']:
            for instance in reservation['Instances']:
                name = _tag_name(instance)
                if fnmatch.fnmatchcase(name, search):
                    found.append((f"{name} ({instance['InstanceId']})",
                                  instance['InstanceId']))
    return found


def find_key_pairs(ec2, search):
    return [(k['KeyName'], k['KeyName'])
            for k in ec2.describe_key_pairs()['KeyPairs']
            if fnmatch.fnmatchcase(k['KeyName'], search)]


def find_security_groups(ec2, search):
    return [(f"{g['GroupName']} ({g['GroupId']})", g['GroupId'])
            for g in ec2.describe_security_groups()['SecurityGroups']
            if fnmatch.fnmatchcase(g['GroupName'], search)]


def main():
    args = parse_args()
    session = boto3.Session(profile_name=args.profile,
                            region_name=args.region)
    ec2 = session.client('ec2')

    instances = find_instances(ec2, args.search)
    print_summary("Instances:", instances)

    print()

    key_pairs = find_key_pairs(ec2, args.search)
    print_summary("Key Pairs:", key_pairs)

    print()

    sec_groups = find_security_groups(ec2, args.search)
    print_summary("Security Groups:", sec_groups)

    print()

    if args.dry_run:
        print("Doing a dry-run, exiting here.")
        return

    cont = input("Delete all of the above resources? [y, N] ")
    if cont.lower() not in ['y', 'yes']:
        return

    if instances:
        ids = [i for _, i in instances]
        print(f"Terminating {len(ids)} instances")
        ec2.terminate_instances(InstanceIds=ids)
        # security groups can only go once nothing uses them anymore
        ec2.get_waiter('instance_terminated').wait(InstanceIds=ids)

    for name, key_name in key_pairs:
        print(f"Deleting {name}")
        ec2.delete_key_pair(KeyName=key_name)

    for name, group_id in sec_groups:
        print(f"Deleting {name}")
        ec2.delete_security_group(GroupId=group_id)

    print()
    print("Done!")


if __name__ == '__main__':
    main()
