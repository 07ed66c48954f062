"""Command sandbox: allowlist, cd escape and kill-all checks."""

from backend import find_project_root
from tools.sandbox import attempts_escape, is_allowed, is_kill_all, split_segments, strip_redundant_cd


def test_allowlisted_executables_pass():
    assert is_allowed("npm install")
    assert is_allowed("npx vite --port 5174")
    assert is_allowed("git status && git diff")
    assert is_allowed("NPM.CMD run build")
    assert is_allowed("node.exe server.js")


def test_disallowed_executables_fail():
    assert not is_allowed("rm -rf /")
    assert not is_allowed("npm install; curl http://example.com")
    assert not is_allowed("git log | grep secret")
    assert not is_allowed("python -c 'print(1)'")


def test_every_line_is_checked():
    assert split_segments("npm install\ngit status\r\nnpm test") == ["npm install", "git status", "npm test"]
    assert is_allowed("npm install\nnpm test")
    assert not is_allowed("echo hi\ntouch pwned")
    assert not is_allowed("npm test\r\ncurl http://example.com")


def test_cd_targets():
    assert is_allowed("cd ./sub && npm run build")
    assert is_allowed("cd . && npm test")
    assert is_allowed('cd "app" && npm install')
    assert not is_allowed("git status && cd ../../etc")
    assert not is_allowed("cd sub/../../x")
    assert not is_allowed("cd /etc")
    assert not is_allowed("cd C:\\Windows")
    assert not is_allowed("cd ~")
    assert not is_allowed("cd")


def test_redirect_ampersand_is_not_a_separator():
    assert split_segments("npm run lint 2>&1") == ["npm run lint 2>&1"]
    assert split_segments("npm run dev & git status") == ["npm run dev", "git status"]


def test_attempts_escape(tmp_path):
    root = str(tmp_path)
    assert attempts_escape("cd /", root)
    assert attempts_escape("cd /", "/")
    assert attempts_escape("cd ..", root)
    assert attempts_escape("npm install && cd ../other", root)
    assert attempts_escape("cd D:\\work", root)
    assert not attempts_escape("cd sub && npm test", root)
    assert not attempts_escape("cd . && npm test", root)
    assert not attempts_escape("npm run build", root)


def test_kill_all_patterns():
    assert is_kill_all("pkill node")
    assert is_kill_all("pkill -f node")
    assert is_kill_all("killall -9 node")
    assert is_kill_all("taskkill /F /IM node.exe")
    assert is_kill_all("TASKKILL  /f  /im  node.exe")
    assert not is_kill_all("npm run dev")
    assert not is_kill_all("pkill -f my-server")


def test_strip_redundant_cd(tmp_path):
    root = str(tmp_path)
    assert strip_redundant_cd(f"cd {root} && npm install", root) == "npm install"
    assert strip_redundant_cd(f'cd "{root}"; npm test', root) == "npm test"
    assert strip_redundant_cd(f"cd {root}", root) == "true"
    assert strip_redundant_cd("cd sub && npm install", root) == "cd sub && npm install"


def test_find_project_root(tmp_path):
    assert find_project_root(str(tmp_path)) == str(tmp_path)
    app = tmp_path / "app"
    app.mkdir()
    (app / "package.json").write_text("{}")
    assert find_project_root(str(tmp_path)) == str(app)
    (tmp_path / "package.json").write_text("{}")
    assert find_project_root(str(tmp_path)) == str(tmp_path)
    missing = str(tmp_path / "missing")
    assert find_project_root(missing) == missing
