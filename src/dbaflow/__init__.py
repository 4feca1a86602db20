# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""SQL Server administration workflows."""
