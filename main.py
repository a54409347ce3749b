# -*- coding: utf-8 -*-
"""命令行入口 - 从旁白脚本生成场景提示词

本模块把流水线编排器包装为命令行工具，支持：
1. 读取脚本文件并生成完整的场景提示词 JSON
2. 控制台审批（或 --yes 自动批准）
3. 从进度快照继续
4. 重新生成单个场景
5. 管理免费/付费 API 密钥
"""
import argparse
import asyncio
import json
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import PipelineConfig
from errors import GenerationCancelled
from key_rotator import CredentialStore, KeyRotator
from models import FullScenePrompt, RunOutcome, StoryAnalysis
from pipeline import PipelineOrchestrator, RunResult
from snapshot_store import SnapshotStore


def create_text_service(config: PipelineConfig, store: Optional[CredentialStore] = None) -> KeyRotator:
    """根据密钥存储和环境变量创建带轮换的远程文本服务

    LLM_API_KEY 可以是逗号分隔的多个免费密钥，只在本次运行中使用，不写入密钥文件。
    """
    store = store or CredentialStore(config.keys_path)
    free_keys = list(store.free_keys)
    for key in (config.api_key or "").split(","):
        key = key.strip()
        if key and key not in free_keys:
            free_keys.append(key)
    paid_key = store.paid_key or config.paid_api_key

    return KeyRotator(
        free_keys,
        paid_key=paid_key,
        base_url=config.base_url,
        model=config.model,
        base_pacing_delay=config.base_pacing_delay,
        min_pacing_delay=config.min_pacing_delay,
        default_cooldown=config.default_cooldown,
        max_retry_after=config.max_retry_after
    )


class ConsoleApprover:
    """控制台审批 - 展示人物身份并等待确认"""

    def __init__(self, auto_approve: bool = False):
        self.auto_approve = auto_approve

    async def __call__(self, analysis: StoryAnalysis) -> Optional[Dict[str, Any]]:
        print("\n" + "=" * 60)
        print(f"年代：{analysis.era}    场景数：{len(analysis.scenes)}")
        print("=" * 60)
        for char_id, identity in analysis.characters.items():
            print(f"  {char_id}  {identity.name}: {identity.visual_descriptor()}")

        if self.auto_approve:
            print("[OK] 已自动批准")
            return None

        answer = await asyncio.to_thread(
            input, "\n继续生成？[Y]是 / [n]取消 / [e]从 JSON 文件载入修改后的人物: "
        )
        answer = answer.strip().lower()
        if answer in ("n", "no"):
            raise GenerationCancelled()
        if answer in ("e", "edit"):
            path = await asyncio.to_thread(input, "人物 JSON 文件路径: ")
            with open(path.strip(), 'r', encoding='utf-8') as f:
                return json.load(f)
        return None


class ScenePromptRunner:
    """场景提示词生成器 - 命令行运行封装"""

    def __init__(self, orchestrator: PipelineOrchestrator):
        self.orchestrator = orchestrator

    async def process_script(self, file_path: str, style: str = "",
                             scene_duration: Optional[float] = None,
                             output_path: Optional[str] = None) -> RunResult:
        """
        处理脚本文件

        Args:
            file_path: 脚本文件路径
            style: 视觉风格
            scene_duration: 目标场景时长（秒）
            output_path: 输出文件路径（可选）
        """
        with open(file_path, 'r', encoding='utf-8') as f:
            script = f.read()

        start_time = datetime.now()
        print(f"\n[START] 开始处理脚本：{file_path}（{len(script.split())} 个词）")
        result = await self.orchestrator.run(script, style, scene_duration)
        self._finalize(result, file_path, output_path, datetime.now() - start_time)
        return result

    async def resume(self, output_path: Optional[str] = None) -> RunResult:
        """从进度快照继续"""
        snapshot = self._load_snapshot()
        start_time = datetime.now()
        result = await self.orchestrator.continue_from_progress(snapshot)
        self._finalize(result, "(snapshot)", output_path, datetime.now() - start_time)
        return result

    async def regenerate(self, scene_number: int, output_path: Optional[str] = None) -> List[FullScenePrompt]:
        """重新生成快照中的第 scene_number 个场景（从 1 开始）"""
        snapshot = self._load_snapshot()
        self.orchestrator.restore(snapshot)
        prompts = await self.orchestrator.regenerate_scene(scene_number - 1, list(snapshot.prompts))
        if output_path:
            self._save_result(self._build_result(prompts, snapshot.analysis, "(snapshot)"), output_path)
        return prompts

    def _load_snapshot(self):
        store = self.orchestrator.snapshot_store
        snapshot = store.load() if store is not None else None
        if snapshot is None:
            raise FileNotFoundError("没有找到进度快照")
        return snapshot

    def _finalize(self, result: RunResult, source: str, output_path: Optional[str], duration) -> None:
        if result.outcome == RunOutcome.CANCELLED:
            print(f"\n[STATE] 已取消，完成 {len(result.prompts)} 个场景，快照已保留")
            return
        final_result = self._build_result(result.prompts, result.analysis, source, duration)
        if output_path:
            self._save_result(final_result, output_path)
        self._print_summary(final_result)

    @staticmethod
    def _build_result(prompts: List[FullScenePrompt], analysis: Optional[StoryAnalysis],
                      source: str, duration=None) -> Dict[str, Any]:
        fallbacks = [p.scene_id for p in prompts if p.fallback_marker]
        return {
            "metadata": {
                "source_file": source,
                "era": analysis.era if analysis else "",
                "visual_style": analysis.visual_style_lock if analysis else "",
                "processing_duration": str(duration) if duration is not None else None,
                "completed_at": datetime.now().isoformat()
            },
            "statistics": {
                "total_characters": len(analysis.characters) if analysis else 0,
                "total_scenes": len(prompts),
                "total_duration_sec": round(sum(p.duration_sec for p in prompts), 1),
                "fallback_scenes": fallbacks
            },
            "characters": {
                cid: identity.to_dict() for cid, identity in (analysis.characters if analysis else {}).items()
            },
            "scenes": [p.to_dict() for p in prompts]
        }

    @staticmethod
    def _save_result(result: Dict, output_path: str) -> None:
        """保存结果到文件"""
        indent = 2 if os.environ.get("OUTPUT_INDENT", "true").lower() == "true" else None
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(result, f, ensure_ascii=False, indent=indent)
        print(f"\n[SAVE] 结果已保存到：{output_path}")

    @staticmethod
    def _print_summary(result: Dict) -> None:
        """打印处理摘要"""
        stats = result["statistics"]
        print("\n" + "=" * 60)
        print("处理完成！")
        print("=" * 60)
        print(f"\n[STATS] 统计信息:")
        print(f"   处理时长：{result['metadata']['processing_duration']}")
        print(f"   人物数量：{stats['total_characters']}")
        print(f"   场景数量：{stats['total_scenes']}")
        print(f"   总时长：{stats['total_duration_sec']} 秒")
        if stats["fallback_scenes"]:
            print(f"   [WARN] 回退场景：{', '.join(stats['fallback_scenes'])}")


def manage_keys(store: CredentialStore, add_keys: List[str], paid_key: Optional[str]) -> None:
    for key in add_keys:
        if store.add_free_key(key):
            print(f"[KEYS] 已添加免费密钥，共 {len(store.free_keys)} 个")
        else:
            print("[KEYS] 密钥为空或已存在，忽略")
    if paid_key:
        store.set_paid_key(paid_key)
        print("[KEYS] 已设置付费密钥")
    masked = store.masked()
    print(f"[KEYS] 免费密钥：{masked['free_keys']}  付费密钥：{masked['paid_key']}")


def main():
    """主函数 - 命令行入口"""
    parser = argparse.ArgumentParser(
        description="场景提示词生成系统 - 从旁白脚本生成视频场景提示词",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 处理脚本并输出结果
  python main.py --file script.txt --output scenes.json --style "oil painting, warm palette"

  # 从上次中断的位置继续
  python main.py --resume --output scenes.json

  # 重新生成第 3 个场景
  python main.py --regenerate 3 --output scenes.json

  # 添加免费密钥
  python main.py --add-key AIza...
        """
    )

    parser.add_argument("--file", "-f", type=str, default=None, help="脚本文件路径（.txt 格式）")
    parser.add_argument("--output", "-o", type=str, default=None, help="输出文件路径（.json 格式）")
    parser.add_argument("--style", type=str, default="", help="锁定的视觉风格描述")
    parser.add_argument("--scene-duration", type=float, default=None, help="目标场景时长（秒，默认 8）")
    parser.add_argument("--resume", action="store_true", help="从进度快照继续生成")
    parser.add_argument("--snapshot", type=str, default=None, help="进度快照文件路径")
    parser.add_argument("--keys-file", type=str, default=None, help="密钥文件路径")
    parser.add_argument("--add-key", action="append", default=[], help="添加免费密钥（可重复）")
    parser.add_argument("--paid-key", type=str, default=None, help="设置付费密钥")
    parser.add_argument("--yes", "-y", action="store_true", help="自动批准人物身份")
    parser.add_argument("--regenerate", type=int, default=None, metavar="N",
                        help="重新生成快照中的第 N 个场景（从 1 开始）")

    args = parser.parse_args()

    config = PipelineConfig.from_env()
    if args.snapshot:
        config.snapshot_path = args.snapshot
    if args.keys_file:
        config.keys_path = args.keys_file
    if args.scene_duration is not None:
        config.scene_duration = args.scene_duration

    store = CredentialStore(config.keys_path)
    if args.add_key or args.paid_key:
        manage_keys(store, args.add_key, args.paid_key)
        if not (args.file or args.resume or args.regenerate is not None):
            return

    if not (args.file or args.resume or args.regenerate is not None):
        parser.error("需要 --file、--resume 或 --regenerate 之一")

    if args.file and not os.path.exists(args.file):
        print(f"[ERROR] 错误：文件不存在 - {args.file}")
        sys.exit(1)

    orchestrator = PipelineOrchestrator(
        create_text_service(config, store),
        config=config,
        snapshot_store=SnapshotStore(config.snapshot_path),
        approval_handler=ConsoleApprover(auto_approve=args.yes)
    )
    runner = ScenePromptRunner(orchestrator)

    try:
        if args.regenerate is not None:
            asyncio.run(runner.regenerate(args.regenerate, args.output))
        elif args.resume:
            asyncio.run(runner.resume(args.output))
        else:
            asyncio.run(runner.process_script(args.file, args.style, args.scene_duration, args.output))
        print("\n[OK] 处理完成！")
    except Exception as e:
        print(f"\n[ERROR] 处理失败：{e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
