# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import io
import logging
import os
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

from charms.webmin_setup_repo.v0 import apt, dnf, setup_repo
from charms.webmin_setup_repo.v0.base import (
    DownloadError,
    SetupPermissionError,
    UnsupportedOsError,
    UnsupportedPackageManagerError,
)
from charms.webmin_setup_repo.v0.channels import Channel, RepoOptions, resolve
from charms.webmin_setup_repo.v0.osrelease import Dialect, HostOs
from pyfakefs.fake_filesystem_unittest import TestCase

ARMORED_KEY = "-----BEGIN PGP PUBLIC KEY BLOCK-----\nxyz\n-----END PGP PUBLIC KEY BLOCK-----\n"
DEARMORED_KEY = b"binary-key"

sources_list = """deb http://archive.ubuntu.com/ubuntu noble main
deb https://download.webmin.com/download/repository sarge contrib
"""


def system_side_effect(cmd, **kwargs):
    """Stand in for curl, gpg, rpm and the package managers."""
    if cmd[0] == "/usr/bin/curl":
        with open(os.path.join(kwargs["cwd"], os.path.basename(cmd[-1])), "w") as f:
            f.write(ARMORED_KEY)
    if cmd == ["gpg", "--dearmor"]:
        return subprocess.CompletedProcess(cmd, 0, stdout=DEARMORED_KEY, stderr=b"")
    return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


def answer(text):
    return lambda: text


class TestConfirm(TestCase):
    def setUp(self):
        self.setUpPyfakefs()
        self.stable = resolve(Channel.Stable, RepoOptions())

    def test_only_y_confirms(self):
        for reply in ("y", "Y"):
            self.assertTrue(
                setup_repo.confirm(self.stable, input_fn=answer(reply), out=io.StringIO())
            )
        for reply in ("", "n", "N", "yes", " y", "YES", "q"):
            self.assertFalse(
                setup_repo.confirm(self.stable, input_fn=answer(reply), out=io.StringIO())
            )

    def test_eof_declines(self):
        def eof():
            raise EOFError

        self.assertFalse(setup_repo.confirm(self.stable, input_fn=eof, out=io.StringIO()))

    def test_force_skips_prompt(self):
        prompt = MagicMock()
        out = io.StringIO()
        self.assertTrue(setup_repo.confirm(self.stable, force=True, input_fn=prompt, out=out))
        prompt.assert_not_called()
        self.assertEqual(out.getvalue(), "Setup webmin Releases repository? (y/N) \n")

    def test_banners(self):
        out = io.StringIO()
        setup_repo.confirm(
            resolve(Channel.Prerelease, RepoOptions()), input_fn=answer("n"), out=out
        )
        self.assertIn("Prerelease builds are automated", out.getvalue())
        self.assertIn("Setup webmin Prerelease repository? (y/N) ", out.getvalue())

        out = io.StringIO()
        setup_repo.confirm(resolve(Channel.Unstable, RepoOptions()), input_fn=answer("n"), out=out)
        self.assertIn("critical bugs and breaking changes", out.getvalue())

        out = io.StringIO()
        setup_repo.confirm(self.stable, input_fn=answer("n"), out=out)
        self.assertNotIn("builds are automated", out.getvalue())


class TestReport(TestCase):
    def setUp(self):
        self.setUpPyfakefs()
        self.host = HostOs(Dialect.Rhel, "rocky", dnf.RpmPackageManager("dnf"))

    def test_missing_binary_prints_hint(self):
        out = io.StringIO()
        self.assertTrue(setup_repo.report(RepoOptions(), self.host, out=out))
        lines = out.getvalue().splitlines()
        self.assertEqual(lines[0], "Webmin and Usermin can be installed with:")
        self.assertIn("dnf install webmin usermin", lines[1])

    def test_installed_binary_is_silent(self):
        self.fs.create_file("/usr/bin/webmin", st_mode=0o100755)
        out = io.StringIO()
        self.assertFalse(setup_repo.report(RepoOptions(), self.host, out=out))
        self.assertEqual(out.getvalue(), "")

    def test_disabled_check(self):
        for binary in ("", "0"):
            out = io.StringIO()
            self.assertFalse(
                setup_repo.report(RepoOptions(check_binary=binary), self.host, out=out)
            )
            self.assertEqual(out.getvalue(), "")


class TestWriterFor(TestCase):
    def setUp(self):
        self.setUpPyfakefs()

    def test_dialects(self):
        options = RepoOptions()
        debian = HostOs(Dialect.Debian, "ubuntu", apt.AptGet())
        suse = HostOs(Dialect.Suse, "opensuse-leap", dnf.RpmPackageManager("zypper"))
        self.assertIsInstance(setup_repo.writer_for(debian, options), apt.DebianRepositoryWriter)
        writer = setup_repo.writer_for(suse, options)
        self.assertIsInstance(writer, dnf.RpmRepositoryWriter)
        self.assertEqual(writer.repo_dir, "/etc/zypp/repos.d")
        self.assertEqual(writer.extra, {"autorefresh": "1"})

    def test_rhel_writer_has_no_zypper_options(self):
        rhel = HostOs(Dialect.Rhel, "rocky", dnf.RpmPackageManager("dnf"))
        writer = setup_repo.writer_for(rhel, RepoOptions())
        self.assertEqual(writer.repo_dir, "/etc/yum.repos.d")
        self.assertEqual(writer.extra, {})

    def test_unsupported_package_type(self):
        host = MagicMock(package_type="apk")
        with self.assertRaises(UnsupportedPackageManagerError):
            setup_repo.writer_for(host, RepoOptions())


@patch("os.geteuid", return_value=0)
@patch("shutil.which", return_value="/usr/bin/dnf")
class TestSetup(TestCase):
    def setUp(self):
        self.setUpPyfakefs()
        self.fs.create_file("/usr/bin/curl", st_mode=0o100755)
        self.fs.create_file("/usr/bin/gpg", st_mode=0o100755)
        os.makedirs("/tmp", exist_ok=True)

    @patch("subprocess.run", side_effect=system_side_effect)
    def test_stable_ubuntu_forced(self, mock_run, *_):
        self.fs.create_file("/etc/os-release", contents="ID=ubuntu\n")
        self.fs.create_file("/etc/apt/sources.list", contents=sources_list)
        options = RepoOptions(channel=Channel.Stable, force=True)

        self.assertTrue(setup_repo.setup(options, out=io.StringIO()))

        lines = Path("/etc/apt/sources.list.d/webmin-stable.list").read_text().splitlines()
        self.assertEqual(len(lines), 1)
        tokens = lines[0].split()
        self.assertEqual(tokens[0], "deb")
        self.assertEqual(
            tokens[1], "[signed-by=/usr/share/keyrings/ubuntu-webmin-developers.gpg]"
        )
        self.assertTrue(tokens[2].endswith("/download/newkey/repository"))
        self.assertEqual(tokens[-2:], ["stable", "contrib"])
        self.assertNotIn("download.webmin.com", Path("/etc/apt/sources.list").read_text())
        self.assertEqual(
            Path("/usr/share/keyrings/ubuntu-webmin-developers.gpg").read_bytes(), DEARMORED_KEY
        )
        commands = [c.args[0] for c in mock_run.call_args_list]
        self.assertIn(["apt-get", "clean"], commands)
        self.assertEqual(commands[-1], ["apt-get", "update"])

    @patch("subprocess.run", side_effect=system_side_effect)
    def test_prerelease_rhel(self, mock_run, *_):
        self.fs.create_file("/etc/os-release", contents='ID="almalinux"\nID_LIKE="rhel"\n')
        options = RepoOptions(channel=Channel.Prerelease, force=True)

        self.assertTrue(setup_repo.setup(options, out=io.StringIO()))

        profile = resolve(options.channel, options)
        self.assertEqual(profile.name, "webmin-prerelease")
        self.assertEqual(profile.dist, "webmin")
        repo = Path("/etc/yum.repos.d/webmin-prerelease.repo").read_text()
        self.assertIn("[webmin-prerelease-noarch]\n", repo)
        self.assertIn("baseurl=https://rc.download.webmin.dev\n", repo)
        self.assertNotIn("newkey", repo)
        self.assertTrue(Path("/etc/pki/rpm-gpg/RPM-GPG-KEY-webmin-developers").exists())

    @patch("subprocess.run", side_effect=system_side_effect)
    def test_unsupported_os_before_network(self, mock_run, *_):
        self.fs.create_file("/etc/os-release", contents="ID=freebsd\n")
        with self.assertRaises(UnsupportedOsError):
            setup_repo.setup(RepoOptions(force=True), out=io.StringIO())
        mock_run.assert_not_called()

    @patch("subprocess.run", side_effect=system_side_effect)
    def test_decline_mutates_nothing(self, mock_run, *_):
        self.fs.create_file("/etc/os-release", contents="ID=ubuntu\n")
        self.fs.create_file("/etc/apt/sources.list", contents=sources_list)

        self.assertFalse(setup_repo.setup(RepoOptions(), input_fn=answer(""), out=io.StringIO()))

        mock_run.assert_not_called()
        self.assertFalse(os.path.exists("/etc/apt/sources.list.d"))
        self.assertFalse(os.path.exists("/tmp/developers-key.asc"))
        self.assertEqual(Path("/etc/apt/sources.list").read_text(), sources_list)

    @patch("subprocess.run", side_effect=system_side_effect)
    def test_rerun_is_idempotent(self, _, *__):
        self.fs.create_file("/etc/os-release", contents="ID=debian\n")
        self.fs.create_file("/etc/apt/sources.list", contents=sources_list)
        options = RepoOptions(channel=Channel.Unstable, force=True)

        setup_repo.setup(options, out=io.StringIO())
        first = Path("/etc/apt/sources.list.d/webmin-unstable.list").read_bytes()
        sources = Path("/etc/apt/sources.list").read_text()
        setup_repo.setup(options, out=io.StringIO())

        self.assertEqual(first, Path("/etc/apt/sources.list.d/webmin-unstable.list").read_bytes())
        self.assertEqual(sources, Path("/etc/apt/sources.list").read_text())

    @patch("subprocess.run")
    def test_download_failure_writes_no_repo(self, mock_run, *_):
        self.fs.create_file("/etc/os-release", contents="ID=fedora\n")
        mock_run.return_value = subprocess.CompletedProcess([], 6, "", "curl: (6) no host")
        with self.assertRaises(DownloadError):
            setup_repo.setup(RepoOptions(force=True), out=io.StringIO())
        self.assertFalse(os.path.exists("/etc/yum.repos.d/webmin-stable.repo"))

    def test_requires_root(self, _, mock_geteuid):
        mock_geteuid.return_value = 1000
        with self.assertRaises(SetupPermissionError) as ctx:
            setup_repo.setup(RepoOptions(force=True), out=io.StringIO())
        self.assertIsInstance(ctx.exception, PermissionError)


class TestParseArgs(TestCase):
    def setUp(self):
        self.setUpPyfakefs()

    def test_defaults(self):
        self.assertEqual(setup_repo.parse_args([]), RepoOptions())

    def test_channel_flags(self):
        self.assertIs(setup_repo.parse_args(["--rc"]).channel, Channel.Prerelease)
        self.assertIs(setup_repo.parse_args(["--prerelease"]).channel, Channel.Prerelease)
        self.assertIs(setup_repo.parse_args(["-t"]).channel, Channel.Unstable)
        self.assertIs(setup_repo.parse_args(["--testing"]).channel, Channel.Unstable)
        self.assertIs(setup_repo.parse_args(["--unstable", "--stable"]).channel, Channel.Stable)

    def test_overrides(self):
        options = setup_repo.parse_args(
            [
                "-f", "--host=mirror.example.com", "--key=k.asc", "--name=usermin",
                "--description=Usermin", "--dist=bookworm", "--check-binary=0",
            ]
        )  # fmt: skip
        self.assertTrue(options.force)
        self.assertEqual(options.key_url, "https://mirror.example.com/k.asc")
        self.assertEqual(options.profiles()[Channel.Stable].name, "usermin")
        self.assertEqual(options.dist, "bookworm")
        self.assertEqual(options.check_binary, "0")

    def test_unknown_flag(self):
        with self.assertRaises(SystemExit) as ctx:
            setup_repo.parse_args(["--bogus"])
        self.assertNotEqual(ctx.exception.code, 0)


class TestMain(TestCase):
    def setUp(self):
        self.setUpPyfakefs()

    @patch("os.geteuid", return_value=0)
    def test_fatal_error_exit_code(self, _):
        with self.assertLogs("charms.webmin_setup_repo", level="ERROR") as logs:
            self.assertEqual(setup_repo.main(["-f"]), 1)
        self.assertIn("Cannot detect OS!", logs.output[0])

    @patch("os.geteuid", return_value=0)
    def test_missing_gpg_exit_code(self, _):
        self.fs.create_file("/etc/os-release", contents="ID=ubuntu\n")
        self.fs.create_file("/usr/bin/curl", st_mode=0o100755)
        os.makedirs("/tmp", exist_ok=True)

        def no_gpg(cmd, **kwargs):
            if cmd[0] == "gpg":
                raise FileNotFoundError(2, "No such file or directory", "gpg")
            return system_side_effect(cmd, **kwargs)

        stdout, stderr = io.StringIO(), io.StringIO()
        with patch("subprocess.run", side_effect=no_gpg), patch("sys.stdout", stdout), patch(
            "sys.stderr", stderr
        ):
            self.assertEqual(setup_repo.main(["-f"]), 1)
        self.assertIn("Error: gpg is not installed", stderr.getvalue())
        self.assertFalse(os.path.exists("/etc/apt/sources.list.d/webmin-stable.list"))

    @patch("os.geteuid", return_value=0)
    def test_gnupg_install_failure_exit_code(self, _):
        self.fs.create_file("/etc/os-release", contents="ID=ubuntu\n")
        self.fs.create_file("/usr/bin/curl", st_mode=0o100755)

        def apt_fails(cmd, **kwargs):
            if cmd[:2] == ["apt-get", "install"]:
                return subprocess.CompletedProcess(cmd, 100, stdout="", stderr="E: no gnupg")
            if cmd[0] == "gpg":
                raise FileNotFoundError(2, "No such file or directory", "gpg")
            return system_side_effect(cmd, **kwargs)

        stderr = io.StringIO()
        with patch("subprocess.run", side_effect=apt_fails), patch(
            "sys.stdout", io.StringIO()
        ), patch("sys.stderr", stderr):
            self.assertEqual(setup_repo.main(["-f"]), 1)
        self.assertIn("Error: gpg is not installed", stderr.getvalue())

    @patch("os.geteuid", return_value=0)
    def test_progress_on_stdout_errors_on_stderr(self, _):
        self.fs.create_file("/etc/os-release", contents="ID=ubuntu\n")
        self.fs.create_file("/usr/bin/gpg", st_mode=0o100755)
        os.makedirs("/tmp", exist_ok=True)

        def not_found(cmd, **kwargs):
            if cmd[0] == "/usr/bin/curl":
                return subprocess.CompletedProcess(cmd, 22, stdout="", stderr="curl: (22) 404")
            return system_side_effect(cmd, **kwargs)

        stdout, stderr = io.StringIO(), io.StringIO()
        with patch("subprocess.run", side_effect=not_found), patch("sys.stdout", stdout), patch(
            "sys.stderr", stderr
        ):
            self.assertEqual(setup_repo.main(["-f"]), 1)
        self.assertIn("Setup webmin Releases repository? (y/N)", stdout.getvalue())
        self.assertIn("Installing required curl from OS repos ..", stdout.getvalue())
        self.assertNotIn("Error:", stdout.getvalue())
        self.assertIn("Error:", stderr.getvalue())
        self.assertNotIn("Installing", stderr.getvalue())

    @patch("charms.webmin_setup_repo.v0.setup_repo.setup", return_value=False)
    def test_decline_exit_code(self, mock_setup):
        self.assertEqual(setup_repo.main(["--unstable"]), 0)
        self.assertIs(mock_setup.call_args.args[0].channel, Channel.Unstable)

    def test_error_formatting(self):
        formatter = setup_repo.Formatter()
        record = setup_repo.logger.makeRecord(
            "x", logging.ERROR, __file__, 1, "Unknown OS : %s", ("freebsd",), None
        )
        formatted = formatter.format(record)
        self.assertIn("Error:", formatted)
        self.assertTrue(formatted.endswith(" Unknown OS : freebsd"))
