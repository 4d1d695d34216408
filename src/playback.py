"""
Playback Resilience Controller

Reacts to media-engine and video-element events for a live HLS stream and
decides whether to resume loading, recover the decode pipeline, reload the
whole engine or surface a message to the viewer.

The policy lives in transition(), a pure function of (state, event). The
PlaybackController applies the resulting effects against an injected engine,
element, view and scheduler, so the policy can be exercised without a browser.

Recovery is always scoped to the narrowest fix:
- fatal network error -> resume loading on the same engine (after 1s)
- fatal media error   -> recover the decode pipeline in place (after 1s)
- element error       -> full reload (after 2s)
- stall that outlives the 8s watchdog -> full reload
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set, Tuple

logger = logging.getLogger(__name__)

HLS_MIME_TYPE = "application/vnd.apple.mpegurl"

NETWORK_RETRY_DELAY = 1.0
MEDIA_RECOVERY_DELAY = 1.0
ELEMENT_ERROR_RELOAD_DELAY = 2.0
STALL_WATCHDOG_DELAY = 8.0

# HTMLMediaElement.readyState HAVE_FUTURE_DATA
HAVE_FUTURE_DATA = 3


class PlaybackState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    BUFFERING = "buffering"
    RECOVERING = "recovering"
    ERRORED = "errored"


class EventType(str, Enum):
    LOAD_REQUESTED = "load_requested"
    # Media engine
    MANIFEST_LOADING = "manifest_loading"
    MANIFEST_PARSED = "manifest_parsed"
    ENGINE_ERROR = "engine_error"
    INIT_FAILED = "init_failed"
    UNSUPPORTED = "unsupported"
    # Video element
    ELEMENT_ERROR = "element_error"
    STALLED = "stalled"
    STALL_TIMEOUT = "stall_timeout"
    PLAYING = "playing"
    WAITING = "waiting"
    CAN_PLAY = "canplay"
    CAN_PLAY_THROUGH = "canplaythrough"
    # Play attempts and the viewer
    PLAY_BLOCKED = "play_blocked"
    PLAY_FAILED = "play_failed"
    CLICK = "click"


class ErrorType(str, Enum):
    """Engine error classes, named as the media engine reports them"""
    NETWORK_ERROR = "networkError"
    MEDIA_ERROR = "mediaError"
    MUX_ERROR = "muxError"
    KEY_SYSTEM_ERROR = "keySystemError"
    OTHER_ERROR = "otherError"


class EngineEvent(str, Enum):
    MEDIA_ATTACHED = "hlsMediaAttached"
    MANIFEST_LOADING = "hlsManifestLoading"
    MANIFEST_PARSED = "hlsManifestParsed"
    LEVEL_SWITCHED = "hlsLevelSwitched"
    ERROR = "hlsError"


class Action(str, Enum):
    SHOW_LOADING = "show_loading"
    HIDE_LOADING = "hide_loading"
    SHOW_ERROR = "show_error"
    HIDE_ERROR = "hide_error"
    PLAY = "play"
    START_LOAD = "start_load"
    RECOVER_MEDIA_ERROR = "recover_media_error"
    RELOAD = "reload"
    ARM_STALL_WATCHDOG = "arm_stall_watchdog"


@dataclass(frozen=True)
class PlaybackEvent:
    type: EventType
    fatal: bool = False
    error_type: Optional[str] = None
    details: Optional[str] = None


@dataclass(frozen=True)
class Effect:
    action: Action
    delay: float = 0.0
    message: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    state: PlaybackState
    effects: Tuple[Effect, ...] = ()


@dataclass(frozen=True)
class BufferTuning:
    """
    Engine buffering parameters for a flaky live origin.

    Generous buffers and long loader timeouts trade latency for stability.
    """
    debug: bool = False
    enable_worker: bool = True
    low_latency_mode: bool = False
    back_buffer_length: int = 90
    max_buffer_length: int = 60
    max_max_buffer_length: int = 600
    max_buffer_size: int = 60 * 1000 * 1000
    manifest_loading_time_out: int = 20000
    manifest_loading_max_retry: int = 6
    manifest_loading_retry_delay: int = 500
    level_loading_time_out: int = 20000
    level_loading_max_retry: int = 6
    level_loading_retry_delay: int = 500
    frag_loading_time_out: int = 20000
    frag_loading_max_retry: int = 6
    frag_loading_retry_delay: int = 500
    start_level: int = -1
    abr_ewma_default_estimate: int = 500000
    abr_band_width_factor: float = 0.95
    abr_band_width_up_factor: float = 0.7
    abr_max_with_real_bitrate: bool = True
    test_bandwidth: bool = True
    progressive: bool = True
    with_credentials: bool = False

    def as_engine_config(self) -> Dict[str, Any]:
        """camelCase keys, as the engine's config object expects them"""
        config = {}
        for key, value in asdict(self).items():
            head, *rest = key.split('_')
            config[head + ''.join(part.title() for part in rest)] = value
        return config


# Collaborator interfaces

class MediaEngine(Protocol):
    def attach_media(self, element: "VideoElement") -> None: ...
    def load_source(self, url: str) -> None: ...
    def start_load(self) -> None: ...
    def recover_media_error(self) -> None: ...
    def destroy(self) -> None: ...
    def on(self, event: EngineEvent, callback: Callable[[Dict[str, Any]], None]) -> None: ...


class MediaEngineFactory(Protocol):
    def is_supported(self) -> bool: ...
    def create(self, tuning: BufferTuning) -> MediaEngine: ...


class VideoElement(Protocol):
    paused: bool
    muted: bool
    ready_state: int
    src: Optional[str]
    error: Any

    def play(self) -> Optional[Awaitable[None]]: ...
    def can_play_type(self, mime_type: str) -> str: ...
    def add_event_listener(self, name: str, callback: Callable[..., None]) -> None: ...


class OverlayView(Protocol):
    def show_loading(self, show: bool) -> None: ...
    def show_error(self, show: bool, message: str = ...) -> None: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


# Transition policy

_SHOW_LOADING = Effect(Action.SHOW_LOADING)
_HIDE_LOADING = Effect(Action.HIDE_LOADING)
_HIDE_ERROR = Effect(Action.HIDE_ERROR)


def _show_error(message: str) -> Effect:
    return Effect(Action.SHOW_ERROR, message=message)


def _engine_error_transition(state: PlaybackState, event: PlaybackEvent) -> Transition:
    if not event.fatal:
        return Transition(state)
    if event.error_type == ErrorType.NETWORK_ERROR:
        return Transition(PlaybackState.RECOVERING, (
            _show_error("Network error occurred. Retrying..."),
            Effect(Action.START_LOAD, delay=NETWORK_RETRY_DELAY),
        ))
    if event.error_type == ErrorType.MEDIA_ERROR:
        return Transition(PlaybackState.RECOVERING, (
            _show_error("Media error occurred. Recovering..."),
            Effect(Action.RECOVER_MEDIA_ERROR, delay=MEDIA_RECOVERY_DELAY),
        ))
    # Anything else waits for the viewer or an element-level error
    return Transition(PlaybackState.ERRORED, (
        _show_error("Fatal error occurred. Please try again."),
    ))


def transition(state: PlaybackState, event: PlaybackEvent) -> Transition:
    """Next state and the side effects to run, for one event"""
    kind = event.type

    if kind in (EventType.LOAD_REQUESTED, EventType.MANIFEST_LOADING):
        return Transition(PlaybackState.LOADING, (_HIDE_ERROR, _SHOW_LOADING))

    if kind == EventType.MANIFEST_PARSED:
        return Transition(PlaybackState.LOADING, (_HIDE_LOADING, Effect(Action.PLAY)))

    if kind == EventType.ENGINE_ERROR:
        return _engine_error_transition(state, event)

    if kind == EventType.ELEMENT_ERROR:
        return Transition(PlaybackState.ERRORED, (
            _show_error("Video playback error. Retrying..."),
            Effect(Action.RELOAD, delay=ELEMENT_ERROR_RELOAD_DELAY),
        ))

    if kind == EventType.STALLED:
        return Transition(PlaybackState.BUFFERING, (
            _SHOW_LOADING,
            Effect(Action.ARM_STALL_WATCHDOG, delay=STALL_WATCHDOG_DELAY),
        ))

    if kind == EventType.STALL_TIMEOUT:
        return Transition(state, (Effect(Action.RELOAD),))

    if kind == EventType.PLAYING:
        return Transition(PlaybackState.PLAYING, (_HIDE_LOADING, _HIDE_ERROR))

    if kind == EventType.WAITING:
        return Transition(PlaybackState.BUFFERING, (_SHOW_LOADING,))

    if kind in (EventType.CAN_PLAY, EventType.CAN_PLAY_THROUGH):
        return Transition(state, (_HIDE_LOADING,))

    if kind == EventType.CLICK:
        return Transition(state, (Effect(Action.PLAY),))

    if kind == EventType.PLAY_BLOCKED:
        return Transition(PlaybackState.ERRORED, (
            _show_error("Playback blocked by browser. Please click to play."),))

    if kind == EventType.PLAY_FAILED:
        return Transition(PlaybackState.ERRORED, (
            _show_error("Playback error occurred."),))

    if kind == EventType.INIT_FAILED:
        return Transition(PlaybackState.ERRORED, (
            _HIDE_LOADING,
            _show_error("Failed to initialize player. Please try again."),
        ))

    if kind == EventType.UNSUPPORTED:
        return Transition(PlaybackState.ERRORED, (
            _HIDE_LOADING,
            _show_error("Your browser does not support HLS playback."),
        ))

    raise ValueError(f"Unhandled playback event: {kind}")


class _LoopScheduler:
    """Scheduler backed by the running asyncio loop"""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class PlaybackController:
    def __init__(
        self,
        element: VideoElement,
        view: OverlayView,
        source_url: str,
        engine_factory: MediaEngineFactory,
        scheduler: Optional[Scheduler] = None,
        tuning: Optional[BufferTuning] = None,
        surface: Any = None
    ):
        self.element = element
        self.view = view
        self.source_url = source_url
        self.engine_factory = engine_factory
        self.scheduler = scheduler or _LoopScheduler()
        self.tuning = tuning or BufferTuning()
        self.surface = surface

        self.state = PlaybackState.IDLE
        self.engine: Optional[MediaEngine] = None
        # Bumped on every load; timers and engine callbacks from an older
        # generation are ignored
        self.generation = 0
        self.native_playback = False
        # Set when neither the engine nor the element can play HLS
        self.unsupported = False
        self._stall_watchdog: Optional[TimerHandle] = None
        self._tasks: Set[asyncio.Future] = set()
        self._started = False

    def start(self):
        """Bind element listeners and load the stream"""
        if not self._started:
            self._started = True
            listeners = {
                "error": self._on_element_error,
                "stalled": self._on_stalled,
                "playing": self._on_playing,
                "waiting": self._on_waiting,
                "canplay": self._on_can_play,
                "canplaythrough": self._on_can_play_through,
                "loadedmetadata": self._on_loaded_metadata,
            }
            for name, callback in listeners.items():
                self.element.add_event_listener(name, callback)
            if self.surface is not None:
                self.surface.add_event_listener("click", self.on_click)
        self.load_stream()

    def load_stream(self):
        """Tear down the current engine and build a fresh one"""
        if not self.source_url or self.unsupported:
            return

        self.generation += 1
        generation = self.generation
        self._cancel_stall_watchdog()
        self.dispatch(PlaybackEvent(EventType.LOAD_REQUESTED))

        if self.engine is not None:
            self.engine.destroy()
            self.engine = None
        self.native_playback = False

        if self.engine_factory.is_supported():
            engine = self.engine_factory.create(self.tuning)
            self.engine = engine
            self._bind_engine(engine, generation)
            try:
                # Source is loaded from the MEDIA_ATTACHED callback, never before
                engine.attach_media(self.element)
            except Exception as e:
                logger.error(f"Player initialization error: {e!r}")
                self.dispatch(PlaybackEvent(EventType.INIT_FAILED, details=str(e)))
        elif self.element.can_play_type(HLS_MIME_TYPE):
            logger.info("Using native HLS playback")
            self.native_playback = True
            self.element.src = self.source_url
        else:
            logger.error("No HLS playback support available")
            self.unsupported = True
            self.dispatch(PlaybackEvent(EventType.UNSUPPORTED))

    def destroy(self):
        """Detach from the element for good"""
        self.generation += 1
        self._cancel_stall_watchdog()
        if self.engine is not None:
            self.engine.destroy()
            self.engine = None
        for task in list(self._tasks):
            task.cancel()

    def dispatch(self, event: PlaybackEvent) -> Transition:
        if self.unsupported and event.type != EventType.UNSUPPORTED:
            return Transition(self.state)

        result = transition(self.state, event)
        if result.state != self.state:
            logger.debug(
                f"Playback state {self.state.value} -> {result.state.value} on {event.type.value}")
        self.state = result.state
        for effect in result.effects:
            self._apply(effect)
        return result

    async def play_video(self):
        """Start playback if paused, falling back to muted autoplay"""
        if not self.element.paused:
            return
        # An attempt that outlives a reload must not report into the new load
        generation = self.generation
        try:
            pending = self.element.play()
        except Exception as e:
            logger.error(f"Playback error: {e!r}")
            self.dispatch(PlaybackEvent(EventType.PLAY_FAILED, details=str(e)))
            return
        if pending is None:
            return

        try:
            await pending
        except Exception as e:
            if generation != self.generation:
                logger.debug(f"Dropping play rejection from generation {generation}")
                return
            # Autoplay was prevented, try with muted
            logger.warning(f"Play error: {e!r}")
            self.element.muted = True
            try:
                await self.element.play()
            except Exception as muted_error:
                if generation != self.generation:
                    logger.debug(f"Dropping play rejection from generation {generation}")
                    return
                logger.error(f"Muted play error: {muted_error!r}")
                self.dispatch(PlaybackEvent(
                    EventType.PLAY_BLOCKED, details=str(muted_error)))

    def on_click(self, *args):
        if self.element.paused:
            self.dispatch(PlaybackEvent(EventType.CLICK))

    async def wait_pending(self):
        """Wait for spawned play attempts to settle"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Effects

    def _apply(self, effect: Effect):
        action = effect.action
        if action == Action.SHOW_LOADING:
            self.view.show_loading(True)
        elif action == Action.HIDE_LOADING:
            self.view.show_loading(False)
        elif action == Action.SHOW_ERROR:
            self.view.show_error(True, effect.message)
        elif action == Action.HIDE_ERROR:
            self.view.show_error(False)
        elif action == Action.PLAY:
            self._spawn(self.play_video())
        elif action == Action.START_LOAD:
            self._schedule(effect.delay, self._resume_load)
        elif action == Action.RECOVER_MEDIA_ERROR:
            self._schedule(effect.delay, self._recover_media_error)
        elif action == Action.RELOAD:
            if effect.delay:
                self._schedule(effect.delay, self.load_stream)
            else:
                self.load_stream()
        elif action == Action.ARM_STALL_WATCHDOG:
            self._cancel_stall_watchdog()
            self._stall_watchdog = self._schedule(
                effect.delay, self._on_stall_watchdog)

    def _schedule(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        generation = self.generation

        def fire():
            if generation != self.generation:
                logger.debug(
                    f"Dropping stale timer {callback.__name__} from generation {generation}")
                return
            callback()

        return self.scheduler.call_later(delay, fire)

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _resume_load(self):
        if self.engine is not None:
            logger.info("Resuming stream load after network error")
            self.engine.start_load()

    def _recover_media_error(self):
        if self.engine is not None:
            logger.info("Recovering from media error")
            self.engine.recover_media_error()

    def _on_stall_watchdog(self):
        self._stall_watchdog = None
        if self.element.ready_state < HAVE_FUTURE_DATA:
            logger.info("Still stalled after timeout, reloading stream")
            self.dispatch(PlaybackEvent(EventType.STALL_TIMEOUT))

    def _cancel_stall_watchdog(self):
        if self._stall_watchdog is not None:
            self._stall_watchdog.cancel()
            self._stall_watchdog = None

    # Engine events

    def _bind_engine(self, engine: MediaEngine, generation: int):
        def guarded(handler):
            def callback(data=None):
                if generation != self.generation:
                    logger.debug(f"Ignoring event from replaced engine {generation}")
                    return
                handler(engine, data or {})
            return callback

        engine.on(EngineEvent.MEDIA_ATTACHED, guarded(self._on_media_attached))
        engine.on(EngineEvent.MANIFEST_LOADING, guarded(self._on_manifest_loading))
        engine.on(EngineEvent.MANIFEST_PARSED, guarded(self._on_manifest_parsed))
        engine.on(EngineEvent.LEVEL_SWITCHED, guarded(self._on_level_switched))
        engine.on(EngineEvent.ERROR, guarded(self._on_engine_error))

    def _on_media_attached(self, engine: MediaEngine, data: Dict[str, Any]):
        logger.info("Media attached, loading source...")
        engine.load_source(self.source_url)

    def _on_manifest_loading(self, engine: MediaEngine, data: Dict[str, Any]):
        logger.info("Manifest loading...")
        self.dispatch(PlaybackEvent(EventType.MANIFEST_LOADING))

    def _on_manifest_parsed(self, engine: MediaEngine, data: Dict[str, Any]):
        levels = data.get("levels") or []
        logger.info(f"Manifest parsed, found {len(levels)} quality levels")
        self.dispatch(PlaybackEvent(EventType.MANIFEST_PARSED))

    def _on_level_switched(self, engine: MediaEngine, data: Dict[str, Any]):
        logger.info(f"Quality level switched to {data.get('level')}")

    def _on_engine_error(self, engine: MediaEngine, data: Dict[str, Any]):
        fatal = bool(data.get("fatal"))
        error_type = data.get("type")
        details = data.get("details")
        if fatal:
            logger.error(f"Fatal {error_type}: {details}")
        else:
            logger.warning(f"Non-fatal error: {details}")
        self.dispatch(PlaybackEvent(
            EventType.ENGINE_ERROR, fatal=fatal, error_type=error_type, details=details))

    # Element events

    def _on_element_error(self, *args):
        logger.error(f"Video error: {getattr(self.element, 'error', None)!r}")
        self.dispatch(PlaybackEvent(EventType.ELEMENT_ERROR))

    def _on_stalled(self, *args):
        logger.warning("Playback stalled")
        self.dispatch(PlaybackEvent(EventType.STALLED))

    def _on_playing(self, *args):
        logger.info("Playback started")
        self.dispatch(PlaybackEvent(EventType.PLAYING))

    def _on_waiting(self, *args):
        logger.info("Buffering...")
        self.dispatch(PlaybackEvent(EventType.WAITING))

    def _on_can_play(self, *args):
        self.dispatch(PlaybackEvent(EventType.CAN_PLAY))

    def _on_can_play_through(self, *args):
        self.dispatch(PlaybackEvent(EventType.CAN_PLAY_THROUGH))

    def _on_loaded_metadata(self, *args):
        if self.native_playback:
            self._spawn(self.play_video())
