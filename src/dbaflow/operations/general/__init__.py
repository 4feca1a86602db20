# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0


"""Module for operations run on the computers hosting the instances."""
from dbaflow.operations.general.firewall import new_firewall_rule
from dbaflow.operations.general.privileges import set_privilege
from dbaflow.operations.general.remote import DirectoryService, RemoteExecutor
from dbaflow.operations.general.spn import test_spn
from dbaflow.operations.general.startup_parameters import set_startup_parameter
