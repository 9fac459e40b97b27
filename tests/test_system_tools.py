"""Tests for the node-level system tools: ipmitool, system, lspci/journalctl, storage and shell utilities."""

import pytest


@pytest.fixture
def lost_gpu(scenario_context):
    scenario_context.add_xid_error("dgx-00", 3, 79)
    return scenario_context


def _labelled(output, width):
    """Parse ``label  value`` lines with a fixed label column."""
    return {line[:width].strip(): line[width:].strip() for line in output.splitlines()}


class TestIpmitool:
    """Tests for ipmitool."""

    def test_sensor_list_includes_gpus(self, run):
        lines = run("ipmitool sensor").output.strip().splitlines()
        assert len(lines) == 16
        gpu0 = next(line for line in lines if line.startswith("GPU0_Temp"))
        assert [cell.strip() for cell in gpu0.split("|")][:4] == ["GPU0_Temp", "32.000", "degrees C", "ok"]

    def test_sensor_get(self, run, scenario_context):
        scenario_context.update_gpu("dgx-00", 2, {"temperature": 95})
        output = run("ipmitool sensor get GPU2_Temp").output
        assert "Sensor Reading        : 95 degrees C" in output
        assert "Status                : cr" in output
        assert "Cooling/Fan Fault    : true" in run("ipmitool chassis status").output

    def test_lost_gpu_sensor(self, run, lost_gpu):
        assert "Status                : ns" in run("ipmitool sensor get GPU3_Temp").output

    def test_sensor_get_missing(self, run):
        assert run("ipmitool sensor get Nope").exit_code == 1

    def test_sdr_type(self, run):
        lines = run("ipmitool sdr type temperature").output.strip().splitlines()
        assert len(lines) == 12
        assert run("ipmitool sdr type bogus").exit_code == 1

    def test_sel_records_xid(self, run, lost_gpu):
        assert "Bus Fatal Error (XID 79)" in run("ipmitool sel elist").output
        assert "Entries          : 2" in run("ipmitool sel info").output

    def test_remote_power_off(self, shell, scenario_context):
        result = shell.execute("ipmitool -I lanplus -H dgx-01-bmc -U admin -P admin chassis power off")
        assert result.output == "Chassis Power Control: Down/Off\n"
        node = scenario_context.get_node("dgx-01")
        assert node.bmc.power_state == "Off"
        assert node.slurm_state == "down"
        assert shell.execute("ssh dgx-01").exit_code == 255

        assert shell.execute("ipmitool -H 10.0.254.11 power status").output == "Chassis Power is off\n"
        assert shell.execute("ipmitool -H dgx-01-bmc power cycle").exit_code == 1
        shell.execute("ipmitool -H dgx-01-bmc power on")
        assert node.slurm_state == "idle"

    def test_unknown_host(self, run):
        result = run("ipmitool -H nowhere sensor")
        assert result.exit_code == 1
        assert "Unable to establish IPMI v2 / RMCP+ session to nowhere" in result.output

    def test_usage(self, run):
        assert run("ipmitool").exit_code == 2
        assert run("ipmitool frob").exit_code == 1

    def test_mc_and_lan(self, run):
        assert "Firmware Revision         : 24.01.05" in run("ipmitool mc info").output
        assert "IP Address              : 10.0.254.10" in run("ipmitool lan print 1").output

    def test_version(self, run):
        assert run("ipmitool -V").output == "ipmitool version 1.8.19\n"


class TestSystemCommands:
    """Tests for lscpu, free, dmesg, systemctl and friends."""

    def test_lscpu(self, run):
        rows = _labelled(run("lscpu").output, 24)
        assert rows["CPU(s):"] == "256"
        assert rows["Model name:"] == "AMD EPYC 7742"
        assert rows["Vendor ID:"] == "AuthenticAMD"
        assert rows["NUMA node0 CPU(s):"] == "0-63,128-191"

    def test_free_gigabytes(self, run):
        mem = run("free -g").output.splitlines()[1].split()
        assert mem[:3] == ["Mem:", "1024", "64"]

    def test_free_human(self, run):
        assert run("free -h").output.splitlines()[1].split()[1] == "1.0T"

    def test_dmesg_shows_xid(self, run, lost_gpu):
        output = run("dmesg").output
        assert "NVRM: Xid (PCI:0000:4E:00): 79, pid=0, GPU has fallen off the bus." in output
        assert "Linux version 5.15.0-91-generic" in output

    def test_dmesg_level_filter(self, run, lost_gpu):
        lines = run("dmesg -l err").output.strip().splitlines()
        assert len(lines) == 1
        assert "Xid" in lines[0]
        assert run("dmesg -l loud").exit_code == 1

    def test_dmesg_thermal(self, run, scenario_context):
        scenario_context.update_gpu("dgx-00", 0, {"temperature": 91})
        assert "thermal slowdown active (91 C)" in run("dmesg").output

    def test_systemctl_status_and_stop(self, run, scenario_context):
        result = run("systemctl status nvidia-fabricmanager")
        assert result.exit_code == 0
        assert "Active: active (running)" in result.output

        assert run("systemctl stop nvidia-fabricmanager.service").exit_code == 0
        assert scenario_context.get_node("dgx-00").services["nvidia-fabricmanager"] == "inactive"
        result = run("systemctl is-active nvidia-fabricmanager")
        assert (result.output, result.exit_code) == ("inactive\n", 3)
        run("systemctl start nvidia-fabricmanager")
        assert run("systemctl is-active nvidia-fabricmanager").exit_code == 0

    def test_systemctl_unknown_unit(self, run):
        assert run("systemctl status bogus").exit_code == 4
        assert run("systemctl is-active bogus").exit_code == 3

    def test_systemctl_list(self, run, scenario_context):
        assert "8 loaded units listed." in run("systemctl").output
        scenario_context.set_service_state("dgx-00", "slurmd", "failed")
        output = run("systemctl list-units --state failed").output
        assert "slurmd.service" in output
        assert "1 loaded units listed." in output

    def test_hostname_and_uname(self, run):
        assert run("hostname").output == "dgx-00\n"
        assert run("hostname -I").output == "10.141.0.2 192.168.0.10\n"
        assert run("uname -r").output == "5.15.0-91-generic\n"
        assert run("uname").output == "Linux\n"

    def test_uptime(self, run):
        assert run("uptime -p").output == "up 12 days, 0 hours, 31 minutes\n"
        assert "load average: 0.52, 0.48, 0.45" in run("uptime").output

    def test_hostnamectl(self, run):
        assert "Hardware Model: DGX-A100" in run("hostnamectl").output
        assert run("hostnamectl set-hostname foo").exit_code == 1

    def test_dmidecode(self, run):
        assert "Product Name: DGX-A100" in run("dmidecode -t system").output
        assert run("dmidecode -t 4").output.count("Processor Information") == 2
        assert run("dmidecode -t toaster").exit_code == 2


class TestPciAndJournal:
    def test_lspci(self, run):
        output = run("lspci").output
        assert "07:00.0 3D controller: NVIDIA Corporation Device 20b2 (rev a1)" in output
        assert output.count("3D controller") == 8
        assert output.count("Mellanox Technologies MT28908 Family [ConnectX-6]") == 8

    def test_lspci_lost_gpu(self, run, lost_gpu):
        assert "4e:00.0 3D controller: NVIDIA Corporation Device 20b2 (rev ff)" in run("lspci").output
        assert "!!! Unknown header type 7f" in run("lspci -s 4e:00.0 -v").output

    def test_lspci_vendor_filter(self, run):
        assert len(run("lspci -d 15b3:").output.strip().splitlines()) == 8
        assert len(run("lspci -d 10de").output.strip().splitlines()) == 8 + 6

    def test_journal_kernel(self, run, lost_gpu):
        output = run("journalctl -k").output
        assert output.startswith("-- Logs begin at boot of dgx-00 --")
        assert "dgx-00 kernel: NVRM: Xid (PCI:0000:4E:00): 79" in output

    def test_journal_priority(self, run, lost_gpu):
        lines = run("journalctl -k -p err").output.strip().splitlines()
        assert len(lines) == 2
        assert run("journalctl -p loud").exit_code == 1

    def test_journal_last_line(self, run, lost_gpu):
        lines = run("journalctl -k -n 1").output.strip().splitlines()
        assert len(lines) == 2
        assert "Xid" in lines[1]

    def test_journal_unit(self, run):
        run("systemctl stop nvidia-fabricmanager")
        assert "Stopped Nvidia Fabricmanager." in run("journalctl -u nvidia-fabricmanager.service").output
        assert run("journalctl -u bogus").output == "-- No entries --\n"


class TestStorage:
    def test_df_human(self, run):
        lines = run("df -h").output.strip().splitlines()
        assert lines[0].split() == ["Filesystem", "Size", "Used", "Avail", "Use%", "Mounted", "on"]
        assert len(lines) == 5
        assert lines[-1].split()[0] == "10.10.0.1@o2ib:/lustre"

    def test_df_path(self, run):
        lines = run("df -h /lustre").output.strip().splitlines()
        assert len(lines) == 2
        assert lines[1].endswith("/lustre")
        assert run("df /raid/data").output.strip().splitlines()[1].split()[0] == "/dev/md0"

    def test_df_types_and_inodes(self, run):
        assert run("df -T").output.splitlines()[0].split()[1] == "Type"
        assert "IUse%" in run("df -i").output

    def test_mount(self, run):
        output = run("mount -t lustre").output
        assert output == "10.10.0.1@o2ib:/lustre on /lustre type lustre (rw,flock,lazystatfs,encrypt)\n"
        assert run("mount /dev/sdb /mnt").exit_code == 32

    def test_lfs(self, run):
        output = run("lfs df").output
        assert "lustre-MDT0000_UUID" in output
        assert "lustre-OST0003_UUID" in output
        assert "filesystem_summary:" in output
        assert "lustre-OST0000-osc: active" in run("lfs check servers").output
        assert "stripe_count:  1" in run("lfs getstripe /lustre/data").output
        assert run("lfs getstripe /home/alice").exit_code == 1
        assert run("lfs").exit_code == 1


class TestLinuxUtils:
    """Tests for the file and network utilities."""

    def test_pwd_and_cat(self, run):
        assert run("pwd").output == "/root\n"
        assert run("cat /etc/hostname").output == "dgx-00\n"
        assert run("cat /proc/driver/nvidia/version").output.startswith(
            "NVRM version: NVIDIA UNIX x86_64 Kernel Module  535.129.03"
        )

    def test_sysfs_follows_port_state(self, run, scenario_context):
        path = "/sys/class/infiniband/mlx5_0/ports/1/state"
        assert run(f"cat {path}").output == "4: ACTIVE\n"
        scenario_context.update_ib_port("dgx-00", 0, 1, {"state": "Down"})
        assert run(f"cat {path}").output == "1: DOWN\n"

    def test_cat_errors(self, run):
        assert "No such file or directory" in run("cat /nope").output
        assert "Is a directory" in run("cat /etc").output

    def test_ls(self, run):
        assert run("ls /etc/slurm").output == "gres.conf  slurm.conf\n"
        long = run("ls -la").output.splitlines()
        assert long[0] == "total 16"
        assert long[-1].endswith("train.sbatch")
        assert run("ls /nope").exit_code == 2

    def test_echo_and_env(self, run):
        assert run("echo $USER on $HOSTNAME").output == "root on dgx-00\n"
        assert run("echo -n hi").output == "hi"
        assert "CUDA_HOME=/usr/local/cuda-12.2" in run("env").output

    def test_file_filters(self, run):
        output = run("grep Gres /etc/slurm/slurm.conf").output
        assert output.count("\n") == 2
        assert run("head -n 1 /etc/hosts").output == "127.0.0.1 localhost\n"
        assert run("wc -l /etc/slurm/gres.conf").output == "8\n"
        assert run("grep foo").exit_code == 2

    def test_ip(self, run, scenario_context):
        brief = run("ip -br a").output
        assert "192.168.0.10/24" in brief
        scenario_context.update_ib_port("dgx-00", 1, 1, {"state": "Down"})
        assert run("ip link show dev ibp1s0").output == "1: ibp1s0: mtu 4092 state DOWN\n"
        assert run("ip link show dev nope").exit_code == 1
        assert run("ip").exit_code == 255

    def test_ethtool(self, run):
        assert "Speed: 200000Mb/s" in run("ethtool ibp0s0").output
        assert "driver: mlx5_core" in run("ethtool -i ibp0s0").output
        assert run("ethtool").exit_code == 1

    def test_nvcc(self, run):
        assert "release 12.2" in run("nvcc --version").output
        assert run("nvcc").exit_code == 1

    def test_dpkg(self, run):
        output = run("dpkg -l 'nvidia-*'").output
        assert "nvidia-driver-535" in output
        assert "nvidia-fabricmanager-535" in output
        assert "datacenter-gpu-manager" not in output
        assert run("dpkg -l zzz").exit_code == 1
        assert run("dpkg").exit_code == 2
