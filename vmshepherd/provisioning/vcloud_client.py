"""Minimal vCloud Director REST client: catalogs, vApp templates, vApps, disks."""

import logging
import os
from xml.etree import ElementTree as ET

import httpx

from vmshepherd.errors import ObjectNotFoundError, ProviderTaskError
from vmshepherd.retry import PollResult, RetryPolicies, poll

logger = logging.getLogger(__name__)

API_VERSION = "5.1"
VCLOUD_NS = "http://www.vmware.com/vcloud/v1.5"
OVF_NS = "http://schemas.dmtf.org/ovf/envelope/1"
AUTH_HEADER = "x-vcloud-authorization"

ET.register_namespace("", VCLOUD_NS)
ET.register_namespace("ovf", OVF_NS)


def _media(name, admin=False) -> str:
    prefix = "admin" if admin else "vcloud"
    return f"application/vnd.vmware.{prefix}.{name}+xml"


def _v(tag) -> str:
    return f"{{{VCLOUD_NS}}}{tag}"


def _ovf(tag) -> str:
    return f"{{{OVF_NS}}}{tag}"


def find_link(element, rel=None, media_type=None, name=None):
    """Return the href of the first ``Link`` child matching all given attributes."""
    for link in element.findall(_v("Link")):
        if rel is not None and link.get("rel") != rel:
            continue
        if media_type is not None and link.get("type") != media_type:
            continue
        if name is not None and link.get("name") != name:
            continue
        return link.get("href")
    return None


class VcloudClient:
    """Session-scoped client for one organization.

    Args:
        url: vCloud Director base URL (e.g. https://vcd.example.com).
        organization: organization name; the login user is ``user@organization``.
        http: optional pre-built httpx.Client (tests pass one with a MockTransport).
    """

    def __init__(self, url, organization, user, password, policies: RetryPolicies | None = None, http=None):
        self.url = url.rstrip("/")
        self.organization = organization
        self.user = user
        self.password = password
        self.policies = policies or RetryPolicies()
        self.http = http or httpx.Client(verify=False, timeout=300)
        self._org = None

    # ── Transport ──────────────────────────────────────────────────

    def login(self):
        """Open a session and resolve this organization's href."""
        self.http.headers["Accept"] = f"application/*+xml;version={API_VERSION}"
        resp = self.http.post(f"{self.url}/api/sessions", auth=(f"{self.user}@{self.organization}", self.password))
        resp.raise_for_status()
        self.http.headers[AUTH_HEADER] = resp.headers[AUTH_HEADER]

        org_list = self._request("GET", f"{self.url}/api/org/")
        for org in org_list.findall(_v("Org")):
            if org.get("name") == self.organization:
                self._org = self._request("GET", org.get("href"))
                return self._org
        raise ObjectNotFoundError(f"Organization {self.organization!r} not found")

    @property
    def org(self):
        if self._org is None:
            self.login()
        return self._org

    def _request(self, method, href, body=None, media_type=None):
        """Send a request and return the parsed XML body (None when empty)."""
        headers = {"Content-Type": media_type} if media_type else {}
        content = ET.tostring(body, encoding="utf-8", xml_declaration=True) if body is not None else None
        resp = self.http.request(method, href, content=content, headers=headers)
        if resp.status_code == 404:
            raise ObjectNotFoundError(f"{method} {href}: HTTP {resp.status_code}")
        resp.raise_for_status()
        if not resp.content:
            return None
        return ET.fromstring(resp.content)

    def wait_for_task(self, task, description="vCloud task"):
        """Poll a Task element until it succeeds; raises ProviderTaskError otherwise."""
        if task is None:
            return None
        href = task.get("href")

        def _check():
            current = self._request("GET", href)
            status = current.get("status")
            if status == "success":
                return PollResult.done(current)
            if status in ("error", "canceled", "aborted"):
                error = current.find(_v("Error"))
                message = error.get("message") if error is not None else status
                raise ProviderTaskError(f"{description} {status}: {message}")
            return PollResult.pending(status)

        return poll(self.policies.vcloud_task, _check, description)

    def _wait_for_entity_tasks(self, entity, description):
        tasks = entity.find(_v("Tasks"))
        for task in tasks.findall(_v("Task")) if tasks is not None else []:
            self.wait_for_task(task, description)

    # ── Lookups ────────────────────────────────────────────────────

    def find_vdc(self, name):
        href = find_link(self.org, rel="down", media_type=_media("vdc"), name=name)
        if href is None:
            raise ObjectNotFoundError(f"VDC {name!r} not found")
        return self._request("GET", href)

    def find_catalog(self, name):
        href = find_link(self.org, rel="down", media_type=_media("catalog"), name=name)
        if href is None:
            raise ObjectNotFoundError(f"Catalog {name!r} not found")
        return self._request("GET", href)

    def catalog_exists(self, name) -> bool:
        return find_link(self.org, rel="down", media_type=_media("catalog"), name=name) is not None

    def find_vapp(self, vdc, name):
        for entity in _resource_entities(vdc):
            if entity.get("type") == _media("vApp") and entity.get("name") == name:
                return self._request("GET", entity.get("href"))
        raise ObjectNotFoundError(f"vApp {name!r} not found")

    def find_vm(self, vapp, name):
        children = vapp.find(_v("Children"))
        for vm in children.findall(_v("Vm")) if children is not None else []:
            if vm.get("name") == name:
                return vm
        raise ObjectNotFoundError(f"VM {name!r} not found in vApp {vapp.get('name')!r}")

    def vms(self, vapp) -> list:
        children = vapp.find(_v("Children"))
        return children.findall(_v("Vm")) if children is not None else []

    def _network_href(self, vdc, network_name):
        networks = vdc.find(_v("AvailableNetworks"))
        for network in networks.findall(_v("Network")) if networks is not None else []:
            if network.get("name") == network_name:
                return network.get("href")
        raise ObjectNotFoundError(f"Network {network_name!r} not found in VDC {vdc.get('name')!r}")

    def _refresh(self):
        self._org = self._request("GET", self.org.get("href"))

    # ── Catalogs ───────────────────────────────────────────────────

    def create_catalog(self, name):
        body = ET.Element(_v("AdminCatalog"), {"name": name})
        ET.SubElement(body, _v("Description")).text = name
        admin_href = self.org.get("href").replace("/api/org/", "/api/admin/org/") + "/catalogs"
        catalog = self._request("POST", admin_href, body, _media("catalog", admin=True))
        self._refresh()
        return catalog

    def delete_catalog(self, name):
        """Delete a catalog and every vApp template in it."""
        catalog = self.find_catalog(name)
        items = catalog.find(_v("CatalogItems"))
        for item_ref in items.findall(_v("CatalogItem")) if items is not None else []:
            item = self._request("GET", item_ref.get("href"))
            entity = item.find(_v("Entity"))
            if entity is not None:
                self.wait_for_task(self._request("DELETE", entity.get("href")), f"delete {entity.get('name')}")
            self._request("DELETE", item_ref.get("href"))
        admin_href = catalog.get("href").replace("/api/catalog/", "/api/admin/catalog/")
        self._request("DELETE", admin_href)
        self._refresh()

    # ── vApp templates ─────────────────────────────────────────────

    def upload_vapp_template(self, vdc, catalog_name, template_name, ovf_dir):
        """Upload the OVF package in *ovf_dir* as a vApp template and add it to the catalog."""
        ovf_files = [f for f in os.listdir(ovf_dir) if f.endswith(".ovf")]
        if not ovf_files:
            raise ObjectNotFoundError(f"No .ovf descriptor in {ovf_dir}")

        body = ET.Element(_v("UploadVAppTemplateParams"), {"name": template_name})
        ET.SubElement(body, _v("Description")).text = template_name
        upload_href = find_link(vdc, rel="add", media_type=_media("uploadVAppTemplateParams"))
        template = self._request("POST", upload_href, body, _media("uploadVAppTemplateParams"))
        template_href = template.get("href")

        descriptor_link = self._upload_link(template, "descriptor.ovf")
        with open(os.path.join(ovf_dir, ovf_files[0]), "rb") as f:
            self._put_file(descriptor_link, f, "text/xml")

        def _descriptor_processed():
            current = self._request("GET", template_href)
            if current.get("ovfDescriptorUploaded") == "true":
                return PollResult.done(current)
            return PollResult.pending("descriptor not processed")

        template = poll(self.policies.vcloud_task, _descriptor_processed, f"descriptor of {template_name}")
        for file_element in _files(template):
            name = file_element.get("name")
            if name == "descriptor.ovf" or file_element.get("bytesTransferred") == file_element.get("size"):
                continue
            logger.info(f"Uploading {name} for vApp template {template_name}")
            with open(os.path.join(ovf_dir, name), "rb") as f:
                self._put_file(self._upload_link(template, name), f, "application/octet-stream")

        def _resolved():
            current = self._request("GET", template_href)
            status = current.get("status")
            if status == "8":
                return PollResult.done(current)
            if status == "-1":
                return PollResult.failed(f"vApp template {template_name} failed to import")
            return PollResult.pending(status)

        template = poll(self.policies.vcloud_task, _resolved, f"vApp template {template_name} import")

        catalog = self.find_catalog(catalog_name)
        item = ET.Element(_v("CatalogItem"), {"name": template_name})
        ET.SubElement(item, _v("Description")).text = template_name
        ET.SubElement(item, _v("Entity"), {"href": template_href})
        self._request("POST", f"{catalog.get('href')}/catalogItems", item, _media("catalogItem"))
        return template

    def _upload_link(self, template, file_name):
        for file_element in _files(template):
            if file_element.get("name") == file_name:
                href = find_link(file_element, rel="upload:default")
                if href:
                    return href
        raise ObjectNotFoundError(f"No upload link for {file_name} in {template.get('name')!r}")

    def _put_file(self, href, stream, content_type):
        resp = self.http.put(href, content=stream, headers={"Content-Type": content_type})
        resp.raise_for_status()

    # ── vApps ──────────────────────────────────────────────────────

    def instantiate_vapp_template(self, vdc, template, vapp_name, network_name, vapp_network_name):
        """Create a vApp from *template* bridged onto the VDC network *network_name*."""
        body = ET.Element(
            _v("InstantiateVAppTemplateParams"),
            {"name": vapp_name, "deploy": "false", "powerOn": "false"},
        )
        params = ET.SubElement(body, _v("InstantiationParams"))
        section = ET.SubElement(params, _v("NetworkConfigSection"))
        ET.SubElement(section, _ovf("Info")).text = "Configuration parameters for logical networks"
        config = ET.SubElement(section, _v("NetworkConfig"), {"networkName": vapp_network_name})
        configuration = ET.SubElement(config, _v("Configuration"))
        ET.SubElement(configuration, _v("ParentNetwork"), {"href": self._network_href(vdc, network_name)})
        ET.SubElement(configuration, _v("FenceMode")).text = "bridged"
        ET.SubElement(body, _v("Source"), {"href": template.get("href")})

        href = find_link(vdc, rel="add", media_type=_media("instantiateVAppTemplateParams"))
        vapp = self._request("POST", href, body, _media("instantiateVAppTemplateParams"))
        self._wait_for_entity_tasks(vapp, f"instantiate {vapp_name}")
        return self._request("GET", vapp.get("href"))

    def set_product_section_properties(self, vm, properties):
        """Replace the VM's OVF product section with *properties* (list of dicts)."""
        body = ET.Element(_v("ProductSectionList"))
        section = ET.SubElement(body, _ovf("ProductSection"), {_ovf("required"): "true"})
        ET.SubElement(section, _ovf("Info")).text = "Information about the installed software"
        for prop in properties:
            attrs = {
                _ovf("type"): prop["type"],
                _ovf("key"): prop["key"],
                _ovf("value"): prop["value"] or "",
                _ovf("password"): prop["password"],
                _ovf("userConfigurable"): prop["userConfigurable"],
            }
            element = ET.SubElement(section, _ovf("Property"), attrs)
            ET.SubElement(element, _ovf("Label")).text = prop["Label"]
            ET.SubElement(element, _ovf("Description")).text = prop["Description"]

        task = self._request("PUT", f"{vm.get('href')}/productSections/", body, _media("productSections"))
        self.wait_for_task(task, f"product sections of {vm.get('name')}")

    def power_on(self, vapp):
        task = self._request("POST", f"{vapp.get('href')}/power/action/powerOn")
        self.wait_for_task(task, f"power on {vapp.get('name')}")

    def power_off(self, vapp):
        """Undeploy with power off; vApps that are not deployed are left alone."""
        if vapp.get("deployed") != "true":
            return
        body = ET.Element(_v("UndeployVAppParams"))
        ET.SubElement(body, _v("UndeployPowerAction")).text = "powerOff"
        task = self._request("POST", f"{vapp.get('href')}/action/undeploy", body, _media("undeployVAppParams"))
        self.wait_for_task(task, f"power off {vapp.get('name')}")

    def delete(self, entity):
        task = self._request("DELETE", entity.get("href"))
        self.wait_for_task(task, f"delete {entity.get('name')}")

    # ── Independent disks ──────────────────────────────────────────

    def independent_disks(self, vdc, vm) -> list:
        """Disk entities in *vdc* currently attached to *vm*."""
        attached = []
        for entity in _resource_entities(vdc):
            if entity.get("type") != _media("disk"):
                continue
            vms = self._request("GET", f"{entity.get('href')}/attachedVms")
            if any(ref.get("href") == vm.get("href") for ref in vms.findall(_v("VmReference"))):
                attached.append(entity)
        return attached

    def detach_disk(self, vm, disk):
        body = ET.Element(_v("DiskAttachOrDetachParams"))
        ET.SubElement(body, _v("Disk"), {"href": disk.get("href")})
        task = self._request("POST", f"{vm.get('href')}/disk/action/detach", body, _media("diskAttachOrDetachParams"))
        self.wait_for_task(task, f"detach disk {disk.get('name')}")


def _resource_entities(vdc) -> list:
    entities = vdc.find(_v("ResourceEntities"))
    return entities.findall(_v("ResourceEntity")) if entities is not None else []


def _files(template) -> list:
    files = template.find(_v("Files"))
    return files.findall(_v("File")) if files is not None else []
