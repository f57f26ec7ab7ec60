"""服务装配模块。

在进程启动时一次性构造全部组件（历史缓冲区、各 Responder、编排器），
再把编排器回注到需要提交 prompt 的适配器中。
所有组件都挂在 RelayRuntime 实例上，不使用模块级单例。
"""

from dataclasses import dataclass, field
from typing import List, Optional

from relay_core.backend.session import SessionProvisioner
from relay_core.config.settings import Settings, settings as default_settings
from relay_core.domain.history import HistoryBuffer
from relay_core.infrastructure.logging.logger import logger
from relay_core.orchestrator import ChatOrchestrator
from relay_core.responders import DiscordResponder, GithubGateway, Responder, SseResponder, WebGateway


@dataclass
class RelayRuntime:
    """一个进程内的完整中继实例。"""

    settings: Settings
    history: HistoryBuffer
    orchestrator: ChatOrchestrator
    web: WebGateway
    sse: SseResponder
    discord: Optional[DiscordResponder] = None
    github: Optional[GithubGateway] = None
    responders: List[Responder] = field(default_factory=list)

    def start(self) -> None:
        self.orchestrator.start()

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        self.orchestrator.stop(timeout)
        if self.discord is not None:
            self.discord.close()
        if self.github is not None:
            self.github.close()


def build_runtime(
    config: Optional[Settings] = None,
    provisioner: Optional[SessionProvisioner] = None,
    exchange_factory=None,
) -> RelayRuntime:
    """根据配置装配 RelayRuntime。

    Args:
        config: 配置对象（缺省使用全局 settings）
        provisioner: 会话申请客户端（可替换，便于测试）
        exchange_factory: StreamingExchange 工厂（可替换，便于测试）
    """
    cfg = config or default_settings
    history = HistoryBuffer(cfg.history_size)

    web = WebGateway(history)
    sse = SseResponder(history, max_frames=cfg.sse_queue_size)
    responders: List[Responder] = [web, sse]

    discord = None
    if cfg.discord_enabled:
        discord = DiscordResponder.from_settings(cfg, history)
        responders.append(discord)

    github = None
    if cfg.github_enabled:
        github = GithubGateway.from_settings(cfg)
        responders.append(github)

    orchestrator = ChatOrchestrator(
        cfg.stream_url,
        provisioner or SessionProvisioner.from_settings(cfg),
        history,
        responders,
        exchange_timeout=cfg.exchange_timeout,
        notify_session_failure=cfg.notify_session_failure,
        exchange_factory=exchange_factory,
    )
    for adapter in (web, discord, github):
        if adapter is not None:
            adapter.bind(orchestrator)

    logger.info(
        "Relay runtime assembled",
        extra={"extra": {
            "backend_http": cfg.session_url,
            "backend_ws": cfg.stream_url,
            "discord": "SET" if discord else "NOT SET",
            "github": "SET" if github else "NOT SET",
        }},
    )
    return RelayRuntime(
        settings=cfg,
        history=history,
        orchestrator=orchestrator,
        web=web,
        sse=sse,
        discord=discord,
        github=github,
        responders=responders,
    )
