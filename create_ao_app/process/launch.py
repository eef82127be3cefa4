"""Start-time parameters for the worker and their command-line form."""

from __future__ import annotations

from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict

from create_ao_app.config import AOConfig


class LaunchSpec(BaseModel):
    """Fully-resolved parameters for one ``ProcessSupervisor.start`` call.

    Immutable once built.  ``to_args`` renders the flags in a fixed order so
    the same spec always produces the same command line.
    """

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    wallet: str | None = None
    load: tuple[str, ...] = ()
    data: str | None = None
    tags: tuple[tuple[str, str], ...] = ()
    module: str | None = None
    cron: str | None = None
    monitor: bool = False
    sqlite: bool = False
    gateway_url: str | None = None
    cu_url: str | None = None
    mu_url: str | None = None

    def to_args(self) -> list[str]:
        """Render the worker argument vector (without the executable).

        Order: name, wallet, one ``--load`` per file, data, tag pairs,
        module, cron, monitor, sqlite, gateway/CU/MU endpoints.
        """
        args: list[str] = []
        if self.name:
            args.append(self.name)
        if self.wallet:
            args.extend(["--wallet", self.wallet])
        for path in self.load:
            args.extend(["--load", path])
        if self.data:
            args.extend(["--data", self.data])
        for tag_name, tag_value in self.tags:
            args.extend(["--tag-name", tag_name, "--tag-value", tag_value])
        if self.module:
            args.extend(["--module", self.module])
        if self.cron:
            args.extend(["--cron", self.cron])
        if self.monitor:
            args.append("--monitor")
        if self.sqlite:
            args.append("--sqlite")
        if self.gateway_url:
            args.extend(["--gateway-url", self.gateway_url])
        if self.cu_url:
            args.extend(["--cu-url", self.cu_url])
        if self.mu_url:
            args.extend(["--mu-url", self.mu_url])
        return args

    @classmethod
    def from_options(
        cls,
        config: AOConfig,
        *,
        name: str | None = None,
        wallet: str | None = None,
        load: Sequence[str] | None = None,
        data: str | None = None,
        tags: Sequence[tuple[str, str]] = (),
        module: str | None = None,
        cron: str | None = None,
        monitor: bool | None = None,
        sqlite: bool = False,
        gateway_url: str | None = None,
        cu_url: str | None = None,
        mu_url: str | None = None,
    ) -> "LaunchSpec":
        """Merge caller-supplied options over the project configuration.

        Caller values win.  Tags are merged by name: configured tags come
        first, and a caller tag with the same name replaces the configured
        value in place.
        """
        merged_tags = dict(config.tags)
        for tag_name, tag_value in tags:
            merged_tags[tag_name] = tag_value

        return cls(
            name=name or config.process_name,
            wallet=wallet,
            load=tuple(load) if load else tuple(config.lua_files),
            data=data,
            tags=tuple(merged_tags.items()),
            module=module,
            cron=cron or config.cron_interval,
            monitor=config.monitor if monitor is None else monitor,
            sqlite=sqlite,
            gateway_url=gateway_url,
            cu_url=cu_url,
            mu_url=mu_url,
        )
