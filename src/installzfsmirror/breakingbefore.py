#!/usr/bin/env python

import collections


class BreakingBefore(Exception):
    """Utility exception used to break at a particular stage."""

    pass


break_stages = collections.OrderedDict()
break_stages["validating"] = "validating arguments and drives"
break_stages["preparing"] = "releasing and wiping the drives"
break_stages["partitioning"] = "partitioning the drives"
break_stages["pools_creating"] = "creating the mirrored pool"
break_stages["pools_creating_datasets"] = "creating the datasets"
break_stages["configuring_system"] = "installing the base system"
break_stages["chroot_configuration"] = "configuring the system inside the chroot"
break_stages["finalizing"] = "installing the bootloader on every drive"
break_stages["configuring_first_boot"] = "setting up the first-boot forced import"
