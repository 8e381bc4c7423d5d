"""
配置管理器 - 管理项目白名单与工作区路径配置

这个模块负责：
1. 读取和写入允许显示的项目列表 (allowedProjects)
2. 读取和写入自定义工作区路径 (workspacePath)
3. 配置文件缺失或损坏时回退为空配置，不抛出异常
4. 写入前校验、去除空白并去重项目名称
"""

import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional
from pathlib import Path

logger = logging.getLogger(__name__)


class ConfigValidationError(ValueError):
    """配置内容不合法"""


class ConfigManager:
    """配置管理器类"""

    CONFIG_FILE = "config.json"
    CONFIG_VERSION = "1.0"
    CONFIG_ENV = "CURSOR_VIEW_CONFIG"

    def __init__(self, config_file_path: Optional[str] = None):
        """
        初始化配置管理器

        Args:
            config_file_path: 配置文件路径，默认为环境变量 CURSOR_VIEW_CONFIG，
                其次为项目根目录下的config.json
        """
        self.logger = logging.getLogger(__name__)

        if config_file_path:
            self.config_file_path = Path(config_file_path)
        elif os.environ.get(self.CONFIG_ENV):
            self.config_file_path = Path(os.environ[self.CONFIG_ENV])
        else:
            # 默认使用项目根目录下的config.json
            project_root = Path(__file__).parent.parent
            self.config_file_path = project_root / self.CONFIG_FILE

        self.logger.info(f"配置文件路径: {self.config_file_path}")

    def _read_config(self) -> Dict[str, Any]:
        """读取配置文件，文件不存在或内容无效时返回空字典"""
        try:
            if not self.config_file_path.exists():
                return {}
            with open(self.config_file_path, 'r', encoding='utf-8') as f:
                config = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.error(f"加载配置文件失败: {e}")
            return {}

        if not isinstance(config, dict):
            self.logger.warning("配置文件格式无效，使用空配置")
            return {}
        return config

    def _save_config(self, config: Dict[str, Any]) -> bool:
        """
        保存配置到文件

        Returns:
            bool: 保存是否成功
        """
        try:
            config["version"] = self.CONFIG_VERSION
            config["updated_at"] = datetime.now().isoformat()

            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)

            with open(self.config_file_path, 'w', encoding='utf-8') as f:
                json.dump(config, f, indent=2, ensure_ascii=False)

            self.logger.info("配置文件保存成功")
            return True

        except OSError as e:
            self.logger.error(f"保存配置文件失败: {e}")
            return False

    @staticmethod
    def normalize_projects(projects: Any) -> List[str]:
        """
        校验并规范化项目列表：去除首尾空白、丢弃空字符串、保序去重

        Raises:
            ConfigValidationError: 不是列表，或包含非字符串元素
        """
        if not isinstance(projects, list):
            raise ConfigValidationError("allowedProjects must be an array")
        if not all(isinstance(p, str) for p in projects):
            raise ConfigValidationError("All allowedProjects must be strings")

        unique: List[str] = []
        for project in projects:
            name = project.strip()
            if name and name not in unique:
                unique.append(name)
        return unique

    def get_allowed_projects(self) -> List[str]:
        """
        获取允许显示的项目列表

        每次调用都重新读取配置文件；缺失或格式错误时返回空列表。
        """
        projects = self._read_config().get("allowedProjects")
        if not isinstance(projects, list):
            return []
        return [p for p in projects if isinstance(p, str) and p]

    def set_allowed_projects(self, projects: Any) -> Optional[List[str]]:
        """
        设置允许显示的项目列表

        Returns:
            保存后的项目列表；写入文件失败时返回None

        Raises:
            ConfigValidationError: 输入格式不合法
        """
        unique = self.normalize_projects(projects)
        config = self._read_config()
        config["allowedProjects"] = unique
        if not self._save_config(config):
            return None
        self.logger.info(f"Config saved: {', '.join(unique)}")
        return unique

    def get_workspace_path(self) -> Optional[str]:
        """获取自定义工作区路径，未配置时返回None"""
        path = self._read_config().get("workspacePath")
        return path if isinstance(path, str) and path else None

    def set_workspace_path(self, path: Optional[str]) -> bool:
        """设置自定义工作区路径，None表示使用默认路径"""
        if path is not None and not isinstance(path, str):
            raise ConfigValidationError("workspacePath must be a string")
        config = self._read_config()
        config["workspacePath"] = path.strip() if path else None
        return self._save_config(config)

    def get_config(self) -> Dict[str, Any]:
        """
        获取对外展示的配置内容

        Returns:
            Dict: 包含 allowedProjects 与 workspacePath
        """
        return {
            "allowedProjects": self.get_allowed_projects(),
            "workspacePath": self.get_workspace_path(),
        }

    def get_config_info(self) -> Dict[str, Any]:
        """获取配置文件信息"""
        config = self._read_config()
        return {
            "version": config.get("version"),
            "updated_at": config.get("updated_at"),
            "config_file_path": str(self.config_file_path),
            "config_file_exists": self.config_file_path.exists(),
        }
