"""
CLI tests for perc.py: target selection, output naming, exit codes and the
debug dumps.  Only targets that need no external tools are run here.
"""

import pytest

import perc
from perc import build_arg_parser, default_output, main

HELLO = 'package main\nimport "stdio"\nfunc main() {\n    stdio.Println(42)\n}\n'


def _source(tmp_path, text=HELLO, name="hello.per"):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


class TestOutputNames:
    def test_extensions(self):
        assert default_output("hello.per", "pe") == "hello.exe"
        assert default_output("hello.per", "elf") == "hello"
        assert default_output("hello.nl", "novaria") == "hello.bin"
        assert default_output("hello.per", "nvm-code") == "hello.asm"
        assert default_output("hello.per", "elf-raw") == "hello"

    def test_unknown_suffix_kept(self):
        assert default_output("prog.txt", "novaria") == "prog.txt.bin"

    def test_directory_kept(self, tmp_path):
        src = str(tmp_path / "a" / "b.per")
        assert default_output(src, "pe") == str(tmp_path / "a" / "b.exe")


class TestArguments:
    def test_targets_mutually_exclusive(self):
        with pytest.raises(SystemExit) as info:
            build_arg_parser().parse_args(["x.per", "--pe", "--elf"])
        assert info.value.code == 2

    def test_defaults(self):
        args = build_arg_parser().parse_args(["x.per"])
        assert args.target is None
        assert args.cc == "gcc"
        assert args.stdlib_dir == []

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as info:
            main(["--version"])
        assert info.value.code == 0
        assert capsys.readouterr().out.startswith("perc ")


class TestCompile:
    def test_novaria_binary(self, tmp_path, capsys):
        src = _source(tmp_path)
        assert main([str(src), "--novaria"]) == 0
        out = tmp_path / "hello.bin"
        assert out.read_bytes()[:4] == b"NVM0"
        assert f"Compilation successful: {out}" in capsys.readouterr().out

    def test_nvm_code_listing(self, tmp_path):
        src = _source(tmp_path)
        assert main([str(src), "--nvm-code", "-q"]) == 0
        text = (tmp_path / "hello.asm").read_text()
        assert text.splitlines()[1] == ".magic NVM0"

    def test_explicit_output(self, tmp_path):
        src = _source(tmp_path)
        out = tmp_path / "build" / "prog.exe"
        out.parent.mkdir()
        assert main([str(src), "--pe", "-o", str(out)]) == 0
        assert out.read_bytes()[:2] == b"MZ"

    def test_elf_raw_is_executable(self, tmp_path):
        src = _source(tmp_path)
        assert main([str(src), "--elf-raw"]) == 0
        out = tmp_path / "hello"
        assert out.read_bytes()[:4] == b"\x7fELF"
        assert out.stat().st_mode & 0o111

    def test_search_dir(self, tmp_path):
        lib = tmp_path / "lib"
        lib.mkdir()
        (lib / "util.per").write_text("package util\nfunc Two() int { return 2 }\n")
        src = _source(tmp_path, 'package main\nimport "util"\nfunc main() { util.Two() }\n')
        assert main([str(src), "--novaria", "-I", str(lib)]) == 0

    def test_log_file(self, tmp_path):
        src = _source(tmp_path)
        log_path = tmp_path / "perc.log"
        assert main([str(src), "--novaria", "--log-file", str(log_path)]) == 0
        text = log_path.read_text()
        assert "perc - INFO - source:" in text
        assert "per_compiler.nvm - DEBUG - nvm:" in text


class TestFailures:
    def test_missing_source(self, tmp_path, capsys):
        assert main([str(tmp_path / "nope.per"), "--novaria"]) == 1
        assert "cannot read" in capsys.readouterr().err

    def test_parse_error(self, tmp_path, capsys):
        src = _source(tmp_path, "package main\nfunc main() {\n  var = 1\n}\n")
        assert main([str(src), "--novaria"]) == 1
        err = capsys.readouterr().err
        assert "expected variable name" in err
        assert "var = 1" in err
        assert not (tmp_path / "hello.bin").exists()

    def test_codegen_error(self, tmp_path, capsys):
        src = _source(tmp_path, "package main\nfunc main() {\n  asm { nop }\n}\n")
        assert main([str(src), "--pe"]) == 1
        assert "only supported on the NVM target" in capsys.readouterr().err

    def test_missing_module(self, tmp_path, capsys):
        src = _source(tmp_path, 'package main\nimport "ghost"\nfunc main() {}\n')
        assert main([str(src), "--novaria"]) == 1
        assert "could not find module 'ghost'" in capsys.readouterr().err

    def test_toolchain_missing(self, tmp_path, capsys):
        src = _source(tmp_path)
        assert main([str(src), "--elf", "--cc", "perc-no-such-cc"]) == 1
        assert "not found" in capsys.readouterr().err
        assert (tmp_path / "hello.s").is_file()

    def test_internal_error(self, tmp_path, capsys, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("kaboom")
        monkeypatch.setattr(perc, "compile_source", boom)
        src = _source(tmp_path)
        assert main([str(src), "--novaria"]) == 2
        assert "internal compiler error" in capsys.readouterr().err


class TestDumps:
    def test_tokens(self, tmp_path, capsys):
        src = _source(tmp_path)
        assert main([str(src), "--tokens"]) == 0
        out = capsys.readouterr().out
        assert "Token(KW_PACKAGE, 'package', L1:1)" in out
        assert out.rstrip().endswith("Token(EOF, '', L6:1)")

    def test_ast(self, tmp_path, capsys):
        src = _source(tmp_path)
        assert main([str(src), "--ast"]) == 0
        out = capsys.readouterr().out
        assert out.startswith("Program (1:1):")
        assert "ModuleCall" in out
        assert "name: 'Println'" in out
