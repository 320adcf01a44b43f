import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from memory.base import NarrativeGraphStore
from services.content_source import ContentSource
from services.extraction_retry import ExtractionRetryCoordinator

logger = logging.getLogger("novelist.diagnostics")

OUTLINE_MIN_CHARS = 500
OUTLINE_MAX_CHARS = 10000
LONG_NOVEL_CHAPTERS = 50
TOKENS_PER_CHAPTER = 18000
MUTATION_ERROR_WARN_RATE = 0.05
MUTATION_ERROR_FAIL_RATE = 0.2
# up to this many warnings still counts as healthy
WARNING_TOLERANCE = 3

BEST_PRACTICES: Dict[str, List[str]] = {
    "beforeWriting": [
        "1. 创建详细大纲（1000-3000字），明确主线和支线",
        "2. 设定完整的世界观规则（力量体系、社会结构等）",
        "3. 详细设定主要角色（性格、目标、成长路径）",
        "4. 划分卷蓝图，每卷50-100章，明确阶段目标",
        "5. 准备关键情节点列表（重要转折、高潮点）",
    ],
    "duringWriting": [
        "1. 每生成5-10章检查一次情节连贯性",
        "2. 注意观察Token消耗和成本",
        "3. 定期检查实体抽取是否成功（图谱数据是否完整）",
        "4. 对于重要章节，生成后人工审核并调整",
        "5. 使用伏笔管理功能，避免遗忘未回收的伏笔",
    ],
    "troubleshooting": [
        "问题1：生成内容跑题 → 检查大纲是否清晰，补充卷蓝图",
        "问题2：角色性格不一致 → 检查角色设定，添加关键性格特征到大纲",
        "问题3：情节重复 → 查看图谱历史事件",
        "问题4：伏笔未回收 → 查看未回收伏笔列表，手动指定回收时机",
        "问题5：Token成本过高 → 精简大纲和卷蓝图",
    ],
}


class DiagnosticsService:
    """Read-only health report over the store, the retry coordinator and the novel material."""

    def __init__(
        self,
        store: NarrativeGraphStore,
        retry: Optional[ExtractionRetryCoordinator] = None,
        content: Optional[ContentSource] = None,
    ):
        self.store = store
        self.retry = retry
        self.content = content

    def diagnose(self, novel_id: int) -> Dict[str, Any]:
        logger.info("diagnosis start novel_id=%s", novel_id)
        report: Dict[str, Any] = {"novelId": novel_id}
        warnings: List[str] = []
        errors: List[str] = []
        suggestions: List[str] = []

        if self.content is not None:
            self._check_material(novel_id, report, warnings, suggestions)

        if self.retry is not None:
            failed = [item for item in self.retry.get_failed_extractions() if item["novelId"] == novel_id]
            report["failedExtractionCount"] = len(failed)
            report["pendingRetries"] = self.retry.pending_count()
            if failed:
                errors.append(f"有{len(failed)}个章节实体抽取失败")
                report["failedExtractions"] = failed
                suggestions.append("调用手动重试接口重新抽取失败的章节")

        if not self.store.is_available():
            errors.append(f"图谱存储不可用（backend={self.store.backend_name}）")
        report["graphStatistics"] = self.store.get_graph_statistics(novel_id)

        mutations = self.store.stats.snapshot()
        report["mutationStats"] = mutations
        error_rate = float(mutations.get("errorRate") or 0.0)
        if error_rate >= MUTATION_ERROR_FAIL_RATE:
            errors.append(f"图谱写入失败率过高：{error_rate:.1%}")
        elif error_rate >= MUTATION_ERROR_WARN_RATE:
            warnings.append(f"图谱写入存在失败：{error_rate:.1%}")
            suggestions.append("检查存储日志中的 graph write failed 记录")

        report["warnings"] = warnings
        report["errors"] = errors
        report["suggestions"] = suggestions
        if errors:
            status = "ERROR"
        elif len(warnings) > WARNING_TOLERANCE:
            status = "WARNING"
        else:
            status = "HEALTHY"
        report["healthStatus"] = status
        report["timestamp"] = datetime.now().isoformat()

        logger.info(
            "diagnosis done novel_id=%s status=%s warnings=%d errors=%d",
            novel_id,
            status,
            len(warnings),
            len(errors),
        )
        return report

    def _check_material(
        self,
        novel_id: int,
        report: Dict[str, Any],
        warnings: List[str],
        suggestions: List[str],
    ):
        outline = self.content.get_outline(novel_id)
        report["novelTitle"] = outline.get("title")
        text = outline.get("coreSettings") or ""
        if outline.get("type") != "core_settings" and (not text or text == "暂无大纲"):
            warnings.append("缺少小说大纲，可能导致生成内容偏离预期")
            suggestions.append("建议先生成完整的小说大纲")
        else:
            report["outlineLength"] = len(text)
            if len(text) < OUTLINE_MIN_CHARS:
                warnings.append(f"大纲过短（{len(text)}字），可能不够详细")
                suggestions.append("建议补充大纲内容，至少1000字以上")
            elif len(text) > OUTLINE_MAX_CHARS:
                warnings.append(f"大纲过长（{len(text)}字），可能超出Token预算")
                suggestions.append("建议精简大纲，保留核心内容")

        report["volumeCount"] = len(self.content.get_volumes(novel_id))
        if not report["volumeCount"]:
            warnings.append("缺少卷蓝图，规划时将按默认卷长估算")

        chapters = len(self.content.get_chapters(novel_id))
        report["chapterCount"] = chapters
        if chapters > LONG_NOVEL_CHAPTERS:
            warnings.append(f"检测到长篇小说（已有{chapters}章）")
            suggestions.append("建议每生成10-20章后，进行一次一致性检查")
            report["estimatedTotalTokens"] = chapters * TOKENS_PER_CHAPTER

    @staticmethod
    def get_best_practices() -> Dict[str, List[str]]:
        return {key: list(items) for key, items in BEST_PRACTICES.items()}
