#!/usr/bin/env python3
"""Demo - lib1 压缩包依赖的完整配置流程

场景:
  1. 在临时目录生成 lib1-1.0.tar.gz（带 fetchkit.yml 构建描述）并计算摘要
  2. 第一次配置：下载、校验、解压、集成，lib1::core 发布到宿主图
  3. 删除上游压缩包，用新的编排器再配置一次：只命中缓存，不访问网络
  4. 查询 FetchContent 风格的就绪属性

使用方式:
  python demos/demo_lib1.py
"""

import hashlib
import tarfile
import tempfile
from pathlib import Path

import yaml

from fetchkit.core.config import Config
from fetchkit.core.dep.integrator import IntegrationOptions
from fetchkit.core.dep.locator import Archive
from fetchkit.core.graph import InMemoryGraph
from fetchkit.core.models import DependencyRequest
from fetchkit.core.orchestrator import Orchestrator
from fetchkit.utils.logger import setup_logging

DESCRIPTION = {
    "project": "lib1",
    "variables": {"LIB1_INCLUDE_DIR": "${lib1_SOURCE_DIR}/include"},
    "targets": [
        {"name": "core", "type": "library", "sources": ["src/core.c"]},
        {"name": "tests", "type": "test", "sources": ["src/core.c"], "depends": ["core"]},
    ],
}


def _make_archive(work: Path) -> tuple[Path, str]:
    tree = work / "upstream" / "lib1-1.0"
    (tree / "src").mkdir(parents=True)
    (tree / "src" / "core.c").write_text("int lib1(void) { return 1; }\n", encoding="utf-8")
    (tree / "fetchkit.yml").write_text(yaml.safe_dump(DESCRIPTION), encoding="utf-8")
    archive = work / "lib1-1.0.tar.gz"
    with tarfile.open(archive, "w:gz") as tf:
        tf.add(tree, arcname=tree.name)
    return archive, "sha256:" + hashlib.sha256(archive.read_bytes()).hexdigest()


def _run(cfg: Config, request: DependencyRequest) -> Orchestrator:
    orch = Orchestrator.from_config(cfg, host_variables={"CMAKE_BUILD_TYPE": "Release"})
    graph = InMemoryGraph()
    report = orch.configure([request], graph=graph)
    for name, result in report.populated.items():
        print(f"  {name}: {'缓存命中' if result.already_cached else '已拉取'} -> {result.local_path}")
    for name in sorted(graph.targets):
        print(f"  目标 {name} <{graph.targets[name].kind}>")
    for name, err in report.errors.items():
        print(f"  失败 {name} [{err.kind}] {err.message}")
    print(f"  成功: {'是' if report.success else '否'}")
    return orch


def main():
    setup_logging("WARNING")
    print("=" * 50)
    print("  Demo: lib1 压缩包依赖")
    print("=" * 50)

    with tempfile.TemporaryDirectory(prefix="fetchkit-demo-") as tmp:
        work = Path(tmp)
        print("\n[1/4] 生成上游压缩包 ...")
        archive, digest = _make_archive(work)
        print(f"  {archive.name} {digest[:19]}...")

        cfg = Config(cache_root=str(work / "_deps"), allow_file_urls=True)
        request = DependencyRequest(
            "lib1", Archive(archive.as_uri(), digest),
            IntegrationOptions(build_shared_libs=False, build_testing=True),
        )

        print("\n[2/4] 第一次配置 ...")
        _run(cfg, request)

        print("\n[3/4] 删除上游压缩包后再次配置 ...")
        archive.unlink()
        orch = _run(cfg, request)

        print("\n[4/4] 就绪属性 ...")
        for key, value in orch.get_properties("lib1").items():
            print(f"  {key}: {value}")

    print("\n" + "=" * 50)
    print("  Demo 完成")
    print("=" * 50)


if __name__ == "__main__":
    main()
